import os
import re
import sys
import numpy as np
from PIL import Image

from xcf_solver import XcfError, load_from_file


def compose_layers(canvas):
    """
    Flatten the canvas: starting with the bottom-most layer, draw every
    visible layer over a transparent background with its opacity applied
    as a uniform alpha mask. Parts outside the canvas are clipped.
    """
    img = Image.new('RGBA', (canvas.width, canvas.height), (0, 0, 0, 0))

    for layer in reversed(canvas.layers):
        if not layer.visible:
            continue
        x0, y0, x1, y1 = layer.bounds
        cx0, cy0 = max(x0, 0), max(y0, 0)
        cx1, cy1 = min(x1, canvas.width), min(y1, canvas.height)
        if cx0 >= cx1 or cy0 >= cy1:
            continue

        arr = layer.pixels[cy0 - y0:cy1 - y0, cx0 - x0:cx1 - x0].copy()
        if layer.opacity != 255:
            alpha = arr[:, :, 3].astype(np.uint16) * layer.opacity
            arr[:, :, 3] = ((alpha + 127) // 255).astype(np.uint8)
        img.alpha_composite(Image.fromarray(arr), dest=(cx0, cy0))
    return img


def layer_file_name(layer):
    safe_name = re.sub(r'[\\/*?:"<>|]', "_", layer.name)
    return f"{safe_name}_layer.png"


def save_image_as_png(img, path):
    img.save(path, format="PNG")
    print(f"Saved image to {path}")


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)
    verbose = '-v' in args
    args = [a for a in args if a != '-v']
    if len(args) not in (1, 2):
        print("Usage: python layer_splitter.py [-v] FILENAME.xcf [OUT_DIR]")
        return 1

    filename = args[0]
    out_dir = args[1] if len(args) > 1 else "."

    try:
        canvas = load_from_file(filename, verbose=verbose)
    except (XcfError, OSError) as e:
        print(f"[Err] Unable to load {filename}: {e}")
        return 1
    print(f"Loaded {canvas} from {filename}")

    if not os.path.exists(out_dir): os.makedirs(out_dir)
    for layer in canvas.layers:
        if layer.width == 0 or layer.height == 0:
            print(f"[Info] Skipping empty layer {layer.name!r}")
            continue
        save_image_as_png(layer.to_image(), os.path.join(out_dir, layer_file_name(layer)))

    save_image_as_png(compose_layers(canvas), os.path.join(out_dir, "composed_layer.png"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
