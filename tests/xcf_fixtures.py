"""Test-only XCF writer: builds small RGB/RGBA documents in memory."""

import struct

import numpy as np

from xcf_solver import (
    PROP_COMPRESSION,
    PROP_OFFSETS,
    PROP_OPACITY,
    PROP_VISIBLE,
    tile_grid,
)


def prop(prop_type, payload, length=None):
    if length is None:
        length = len(payload)
    return struct.pack('>II', prop_type, length) + payload


def prop_offsets(x, y):
    return prop(PROP_OFFSETS, struct.pack('>ii', x, y))


def prop_visible(visible):
    return prop(PROP_VISIBLE, struct.pack('>I', 1 if visible else 0))


def prop_opacity(opacity):
    return prop(PROP_OPACITY, struct.pack('>I', opacity))


def prop_compression(mode):
    return prop(PROP_COMPRESSION, bytes([mode]))


def rle_encode(data):
    """Encodes every run of identical bytes as a short or long run opcode."""
    out = bytearray()
    i = 0
    while i < len(data):
        j = i
        while j < len(data) and data[j] == data[i] and j - i < 0xFFFF:
            j += 1
        run = j - i
        if run <= 127:
            out += bytes([run - 1, data[i]])
        else:
            out += bytes([127, run >> 8, run & 0xFF, data[i]])
        i = j
    return bytes(out)


def encode_tile(pixels, left, top, w, h):
    tile = pixels[top:top + h, left:left + w]
    planes = b''.join(tile[:, :, c].tobytes() for c in range(tile.shape[2]))
    return rle_encode(planes)


def xcf_string(name):
    if name is None:
        return struct.pack('>I', 0)
    raw = name.encode('utf-8') + b'\x00'
    return struct.pack('>I', len(raw)) + raw


def build_layer(out, layer):
    pixels = np.asarray(layer['pixels'], dtype=np.uint8)
    height, width, channels = pixels.shape
    color_format = layer.get('color_format', 1 if channels == 4 else 0)

    out += struct.pack('>III', width, height, color_format)
    out += layer.get('raw_name', xcf_string(layer.get('name', '')))
    out += b''.join(layer.get('props', []))
    out += struct.pack('>II', 0, 0)

    pointer_pos = len(out)
    out += struct.pack('>II', 0, 0)  # hierarchy, mask

    struct.pack_into('>I', out, pointer_pos, len(out))
    out += struct.pack('>III', width, height, layer.get('bpp', channels))
    level_pos = len(out)
    # first level, one unused smaller level, sentinel
    out += struct.pack('>III', 0, 0xDEADBEEF, 0)

    struct.pack_into('>I', out, level_pos, len(out))
    out += struct.pack('>II', width, height)
    tiles = list(tile_grid(width, height))
    table_pos = len(out)
    out += b'\x00' * 4 * (len(tiles) + 1)

    encoder = layer.get('encoder', encode_tile)
    for i, (left, top, w, h) in enumerate(tiles):
        struct.pack_into('>I', out, table_pos + 4 * i, len(out))
        out += encoder(pixels, left, top, w, h)


def build_xcf(width, height, layers=(), canvas_props=(), magic=b'gimp xcf ',
              version=b'file', color_mode=0):
    """
    Layers are dicts with `pixels` (h, w, 3|4 uint8) and optional `name`,
    `raw_name`, `props`, `color_format`, `bpp` and `encoder`, top-most first.
    """
    out = bytearray()
    out += magic + version + b'\x00'
    out += struct.pack('>III', width, height, color_mode)
    out += b''.join(canvas_props)
    out += struct.pack('>II', 0, 0)

    table_pos = len(out)
    out += b'\x00' * 4 * (len(layers) + 1)
    for i, layer in enumerate(layers):
        struct.pack_into('>I', out, table_pos + 4 * i, len(out))
        build_layer(out, layer)
    return bytes(out)


def pattern(height, width, channels, seed=0):
    """Distinct values per channel so plane mix-ups are visible."""
    ys, xs = np.mgrid[0:height, 0:width]
    planes = [((xs * 3 + ys * 5 + c * 61 + seed) % 256) for c in range(channels)]
    return np.dstack(planes).astype(np.uint8)
