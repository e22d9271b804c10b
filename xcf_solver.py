"""
XCF (GIMP native format) layer solver.

Reads RGB/RGBA layers of version "file" XCF documents whose tiles are RLE
compressed. Layout reference: http://henning.makholm.net/xcftools/xcfspec-saved
"""
import io
import struct
import numpy as np
from PIL import Image

# ==============================================================================
# 0. Format Constants & Errors
# ==============================================================================

MAGIC = b'gimp xcf '
VERSION = b'file'
TILE_SIZE = 64

# Opacity used for layers that carry no PROP_OPACITY record.
DEFAULT_OPACITY = 255

# canvas color modes
RGB = 0
GRAYSCALE = 1
INDEXED = 2

# layer color formats
RGB_NO_ALPHA = 0
RGB_ALPHA = 1
GRAYSCALE_NO_ALPHA = 2
GRAYSCALE_ALPHA = 3
INDEXED_NO_ALPHA = 4
INDEXED_ALPHA = 5

LAYER_CHANNELS = {RGB_NO_ALPHA: 3, RGB_ALPHA: 4}

# property types
PROP_END = 0
PROP_COLORMAP = 1
PROP_ACTIVE_LAYER = 2
PROP_ACTIVE_CHANNEL = 3
PROP_SELECTION = 4
PROP_FLOATING_SELECTION = 5
PROP_OPACITY = 6
PROP_MODE = 7
PROP_VISIBLE = 8
PROP_LINKED = 9
PROP_LOCK_ALPHA = 10
PROP_APPLY_MASK = 11
PROP_EDIT_MASK = 12
PROP_SHOW_MASK = 13
PROP_SHOW_MASKED = 14
PROP_OFFSETS = 15
PROP_COLOR = 16
PROP_COMPRESSION = 17
PROP_GUIDES = 18
PROP_RESOLUTION = 19
PROP_TATTOO = 20
PROP_PARASITES = 21
PROP_UNIT = 22
PROP_PATHS = 23
PROP_USER_UNIT = 24
PROP_VECTORS = 25
PROP_TEXT_LAYER_FLAGS = 26
PROP_SAMPLE_POINTS = 27
PROP_LOCK_CONTENT = 28
PROP_GROUP_ITEM = 29
PROP_ITEM_PATH = 30
PROP_GROUP_ITEM_FLAGS = 31

PROPERTY_NAMES = {
    value: name[5:] for name, value in globals().items() if name.startswith('PROP_')
}

# compression types
COMPRESS_NONE = 0
COMPRESS_RLE = 1
COMPRESS_ZLIB = 2
COMPRESS_FRACTAL = 3


class XcfError(Exception):
    """Base class of every error raised while reading an XCF stream."""


class FormatError(XcfError, ValueError):
    """Malformed or unsupported structure (magic, version, color format, compression, RLE)."""


class TruncatedError(XcfError, IOError):
    """The stream ended before a field could be read completely."""


# ==============================================================================
# 1. Core Algorithms (RLE / Tile Geometry / Planar Reassembly)
# ==============================================================================

def rle_decode(reader, size):
    """
    [Algorithm] XCF tile RLE decoder

    Expands opcodes from `reader` until exactly `size` bytes are produced:
      0..126   : repeat next byte op+1 times
      127      : u16 count, value byte, repeat count times
      128      : u16 count, copy count literal bytes
      129..255 : copy 256-op literal bytes
    """
    dest = bytearray(size)
    pos = 0
    while pos < size:
        op = reader.read_raw(1, "RLE.Op")[0]
        if op <= 126:
            count = op + 1
            value = reader.read_raw(1, "RLE.Value")
            literal = False
        elif op == 127:
            head = reader.read_raw(3, "RLE.LongRun")
            count = (head[0] << 8) | head[1]
            value = head[2:3]
            literal = False
        elif op == 128:
            head = reader.read_raw(2, "RLE.LongLiteral")
            count = (head[0] << 8) | head[1]
            literal = True
        else:
            count = 256 - op
            literal = True

        if pos + count > size:
            raise FormatError(f"RLE run of {count} bytes at {pos} overruns tile of {size} bytes")

        if literal:
            dest[pos:pos + count] = reader.read_raw(count, "RLE.Literal")
        else:
            dest[pos:pos + count] = value * count
        pos += count
    return dest


def tile_grid(width, height):
    """[Algorithm] Row-major (left, top, w, h) rectangles of the 64x64 tile grid"""
    count_x = (width + TILE_SIZE - 1) // TILE_SIZE
    count_y = (height + TILE_SIZE - 1) // TILE_SIZE
    right_most = width % TILE_SIZE or TILE_SIZE
    bottom_most = height % TILE_SIZE or TILE_SIZE

    for ty in range(count_y):
        h = bottom_most if ty == count_y - 1 else TILE_SIZE
        for tx in range(count_x):
            w = right_most if tx == count_x - 1 else TILE_SIZE
            yield tx * TILE_SIZE, ty * TILE_SIZE, w, h


def deplanarize(data, width, height, channels):
    """
    [Algorithm] Planar tile bytes -> interleaved (height, width, 4) RGBA array

    Plane c occupies data[c*width*height:(c+1)*width*height]. Three channel
    tiles get an opaque alpha plane.
    """
    if channels not in (3, 4):
        raise FormatError(f"unsupported channel count: {channels}")
    plane_size = width * height
    if len(data) != plane_size * channels:
        raise FormatError(f"tile holds {len(data)} bytes, expected {plane_size * channels}")

    planes = list(np.frombuffer(bytes(data), dtype='>u1').reshape((channels, height, width)))
    if channels == 3:
        planes.append(np.full((height, width), 255, dtype='>u1'))
    return np.dstack(planes).astype(np.uint8)


# ==============================================================================
# 2. Stream Reader
# ==============================================================================

class DetailedStreamReader:
    """Big-endian field reader over a seekable binary stream, with optional tracing."""

    def __init__(self, stream, verbose=False):
        self.stream = stream
        self.verbose = verbose
        self.indent_level = 0
        self.indent_str = "    "
        self._size = None

    def indent(self): self.indent_level += 1
    def dedent(self):
        if self.indent_level > 0: self.indent_level -= 1
    def tell(self): return self.stream.tell()

    def seek(self, offset, name="Seek"):
        self.stream.seek(offset)
        if self.verbose:
            print(f"{self.indent_str * self.indent_level}--> {name} @ 0x{offset:08X}")

    def section(self, title):
        if self.verbose:
            print(f"{self.indent_str * self.indent_level}>>> {title}")

    def _log(self, size, name, value_repr):
        if not self.verbose: return
        prefix = self.indent_str * self.indent_level
        print(f"[0x{self.tell()-size:08X}] {prefix}{name:<25} : {value_repr}")

    def remaining(self):
        """Bytes left between the cursor and the end of the stream"""
        pos = self.stream.tell()
        if self._size is None:
            self._size = self.stream.seek(0, io.SEEK_END)
            self.stream.seek(pos)
        return self._size - pos

    def _check_available(self, length, name):
        available = self.remaining()
        if length > available:
            raise TruncatedError(f"EOF reading {name}: wanted {length} bytes, {max(available, 0)} left")

    def read_raw(self, length, name="Bytes"):
        raw = self.stream.read(length)
        if len(raw) < length:
            raise TruncatedError(f"EOF reading {name}: wanted {length} bytes, got {len(raw)}")
        return raw

    def read_u1(self, name="Uint8"):
        val = self.read_raw(1, name)[0]
        self._log(1, name, f"{val} (0x{val:02X})")
        return val

    def read_u4(self, name="Uint32"):
        val = struct.unpack('>I', self.read_raw(4, name))[0]
        self._log(4, name, f"{val}")
        return val

    def read_i4(self, name="Int32"):
        val = struct.unpack('>i', self.read_raw(4, name))[0]
        self._log(4, name, f"{val}")
        return val

    def read_bytes(self, length, name="Bytes"):
        raw = self.read_raw(length, name)
        disp = raw[:16].hex()
        if len(raw) > 16: disp += "..."
        self._log(length, name, f"Size:{length} [{disp}]")
        return raw

    def read_string(self, name="String"):
        """XCF string: u32 length including the 0 terminator; length 0 is the empty string."""
        length = self.read_u4(name + ".Len")
        if length == 0: return ""
        self._check_available(length, name + ".Val")
        raw = self.read_raw(length, name + ".Val")
        val = raw[:-1].decode('utf-8', errors='replace')
        self._log(length, name + ".Val", f"'{val}'")
        return val

    def read_pointer_list(self, name="Pointer"):
        """u32 offsets up to (not including) a 0 sentinel"""
        pointers = []
        while True:
            ptr = self.read_u4(f"{name}[{len(pointers)}]")
            if ptr == 0: return pointers
            pointers.append(ptr)

    def skip(self, length, name="Skipped"):
        self._check_available(length, name)
        self.stream.seek(length, io.SEEK_CUR)
        self._log(length, name, f"Jump {length} bytes")


# ==============================================================================
# 3. Canvas & Layer Model
# ==============================================================================

class Layer:
    """
    A rectangular RGBA pixel area positioned relative to the canvas origin.

    `pixels` holds the unmodified layer pixels as a (height, width, 4) uint8
    array; visibility and opacity are kept apart and have to be applied when
    drawing the layer onto something else.
    """

    def __init__(self, name, pixels, x=0, y=0, visible=True, opacity=DEFAULT_OPACITY):
        self.name = name
        self.pixels = pixels
        self.x = x
        self.y = y
        self.visible = visible
        self.opacity = opacity

    @property
    def width(self): return self.pixels.shape[1]

    @property
    def height(self): return self.pixels.shape[0]

    @property
    def bounds(self):
        """(x0, y0, x1, y1) in canvas coordinates, x1/y1 exclusive"""
        return self.x, self.y, self.x + self.width, self.y + self.height

    def at(self, x, y):
        """RGBA tuple at canvas coordinate (x, y); transparent black outside the layer."""
        lx, ly = x - self.x, y - self.y
        if not (0 <= lx < self.width and 0 <= ly < self.height):
            return (0, 0, 0, 0)
        return tuple(int(v) for v in self.pixels[ly, lx])

    def to_image(self):
        return Image.fromarray(np.ascontiguousarray(self.pixels, dtype=np.uint8))

    def __repr__(self):
        return (f"Layer(name={self.name!r}, bounds={self.bounds}, "
                f"visible={self.visible}, opacity={self.opacity})")


class Canvas:
    """Image size plus its layers, top-most first. The canvas itself holds no pixels."""

    def __init__(self, width, height, layers=None):
        self.width = width
        self.height = height
        self.layers = layers if layers is not None else []

    def get_layer_by_name(self, name):
        for layer in self.layers:
            if layer.name == name:
                return layer
        return None

    def __repr__(self):
        return f"Canvas({self.width}x{self.height}, {len(self.layers)} layers)"


# ==============================================================================
# 4. Sequential Parser
# ==============================================================================

class XcfParser:
    def __init__(self, stream, verbose=False, default_opacity=DEFAULT_OPACITY):
        self.reader = DetailedStreamReader(stream, verbose=verbose)
        self.default_opacity = default_opacity
        self.stage = "header"

    def parse(self):
        reader = self.reader
        self.stage = "header"
        reader.section("File Header")
        reader.indent()
        magic = reader.read_bytes(len(MAGIC), "Magic")
        if magic != MAGIC:
            raise FormatError(f"wrong magic ID: {magic!r}")
        version = reader.read_bytes(len(VERSION), "Version")
        if version != VERSION:
            raise FormatError(f"unsupported file version: {version!r}")
        reader.read_u1("Version Terminator")
        width = reader.read_u4("Width")
        height = reader.read_u4("Height")
        color_mode = reader.read_u4("Color Mode")
        if color_mode != RGB:
            raise FormatError(f"unsupported color format: {color_mode}")
        reader.dedent()

        self.stage = "property"
        self.read_properties({
            PROP_COLORMAP: self._skip_colormap,
            PROP_COMPRESSION: self._check_compression,
        }, "Canvas Properties")

        self.stage = "layer directory"
        reader.section("Layer Directory")
        reader.indent()
        layer_pointers = reader.read_pointer_list("Layer")
        reader.dedent()

        layers = []
        for idx, ptr in enumerate(layer_pointers):
            layers.append(self.parse_layer(idx, ptr))
        return Canvas(width, height, layers)

    def read_properties(self, handlers, title):
        """
        Property loop shared by canvas and layer scope. Tags found in
        `handlers` are interpreted by handler(length); every other tag is
        skipped by its declared length.
        """
        reader = self.reader
        reader.section(title)
        reader.indent()
        while True:
            prop_type = reader.read_u4("PropType")
            length = reader.read_u4(f"{PROPERTY_NAMES.get(prop_type, 'UNKNOWN')}.Len")
            if prop_type == PROP_END:
                break
            handler = handlers.get(prop_type)
            if handler is not None:
                handler(length)
            else:
                reader.skip(length, f"Ignored ({PROPERTY_NAMES.get(prop_type, prop_type)})")
        reader.dedent()

    def _skip_colormap(self, length):
        # some GIMP versions write a wrong length for the color map
        count = self.reader.read_u4("Colormap.Count")
        self.reader.skip(3 * count, "Colormap.Entries")

    def _check_compression(self, length):
        compression = self.reader.read_u1("Compression")
        if compression != COMPRESS_RLE:
            raise FormatError(f"unsupported compression: {compression}")

    def parse_layer(self, idx, offset):
        reader = self.reader
        self.stage = f"layer #{idx}"
        reader.seek(offset, f"Layer #{idx}")
        reader.indent()
        width = reader.read_u4("Width")
        height = reader.read_u4("Height")
        color_format = reader.read_u4("Color Format")
        if color_format not in LAYER_CHANNELS:
            raise FormatError(f"unsupported layer color format, must be RGB: {color_format}")
        name = reader.read_string("Name")

        props = {'x': 0, 'y': 0, 'visible': True, 'opacity': self.default_opacity}

        def read_offsets(length):
            props['x'] = reader.read_i4("Offsets.X")
            props['y'] = reader.read_i4("Offsets.Y")

        def read_visible(length):
            props['visible'] = reader.read_u4("Visible") != 0

        def read_opacity(length):
            props['opacity'] = reader.read_u4("Opacity") & 0xFF

        self.read_properties({
            PROP_OFFSETS: read_offsets,
            PROP_VISIBLE: read_visible,
            PROP_OPACITY: read_opacity,
        }, "Layer Properties")

        pixel_pointer = reader.read_u4("Hierarchy Pointer")
        reader.read_u4("Mask Pointer")

        self.stage = f"pixel hierarchy of layer #{idx}"
        pixels = self.parse_hierarchy(idx, pixel_pointer, width, height, LAYER_CHANNELS[color_format])
        reader.dedent()
        return Layer(name, pixels, x=props['x'], y=props['y'],
                     visible=props['visible'], opacity=props['opacity'])

    def parse_hierarchy(self, idx, offset, width, height, channels):
        reader = self.reader
        reader.seek(offset, "Hierarchy")
        reader.indent()
        reader.read_u4("Hierarchy.Width")
        reader.read_u4("Hierarchy.Height")
        bpp = reader.read_u4("Bytes Per Pixel")
        if bpp != channels:
            raise FormatError(f"{bpp} bytes per pixel does not match a {channels} channel layer")
        level_pointer = reader.read_u4("Level[0]")
        reader.read_pointer_list("Unused Level")

        reader.seek(level_pointer, "Level[0]")
        reader.read_u4("Level.Width")
        reader.read_u4("Level.Height")

        tiles = list(tile_grid(width, height))
        tile_pointers = [reader.read_u4(f"Tile[{i}]") for i in range(len(tiles) + 1)][:len(tiles)]

        pixels = np.zeros((height, width, 4), dtype=np.uint8)
        for t, ((left, top, w, h), ptr) in enumerate(zip(tiles, tile_pointers)):
            self.stage = f"RLE tile #{t} of layer #{idx}"
            reader.seek(ptr, f"Tile #{t} ({w}x{h} @ {left},{top})")
            data = rle_decode(reader, w * h * bpp)
            pixels[top:top + h, left:left + w] = deplanarize(data, w, h, bpp)
        reader.dedent()
        return pixels


# ==============================================================================
# 5. Entry Points
# ==============================================================================

def decode(stream, verbose=False, default_opacity=DEFAULT_OPACITY):
    """
    Read a Canvas from a seekable binary stream. The stream is borrowed,
    not closed. Supports RGB/RGBA layers, version "file" and RLE tiles only.
    """
    parser = XcfParser(stream, verbose=verbose, default_opacity=default_opacity)
    try:
        return parser.parse()
    except XcfError as e:
        raise type(e)(f"read XCF: {parser.stage}: {e}") from e
    except OSError as e:
        raise OSError(f"read XCF: {parser.stage}: {e}") from e


def decode_bytes(data, verbose=False, default_opacity=DEFAULT_OPACITY):
    return decode(io.BytesIO(data), verbose=verbose, default_opacity=default_opacity)


def load_from_file(path, verbose=False, default_opacity=DEFAULT_OPACITY):
    with open(path, 'rb') as f:
        return decode(f, verbose=verbose, default_opacity=default_opacity)
