"""
Pixel addressing and sample encoding for VICAR pixel regions.

The pixel region starts right after the label area: NLB binary header
records first, then the image records. Every record begins with NBB bytes of
binary prefix. What a record holds depends on the organization:

- BSQ: one line of one band; band is the outermost axis.
- BIL: one line of every band, band by band.
- BIP: one line, with the bands of each sample stored together.

Offsets returned here are relative to the start of the pixel region.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple, Union

import numpy as np

from vicar_codec import ByteSource, byte_view
from vicar_errors import InvalidSystemLabel, OutOfRange, TruncatedData, UnsupportedEncoding
from vicar_system import DataType, IntFormat, Organization, RealFormat, SystemLabel, parse_enum

logger = logging.getLogger(__name__)

Sample = Union[int, float, complex]

# Axis order of each organization, outermost first.
NATURAL_AXES = {
    Organization.BSQ: ("band", "line", "sample"),
    Organization.BIL: ("line", "band", "sample"),
    Organization.BIP: ("line", "sample", "band"),
}
# Transposes between the (band, line, sample) layout of arrays handed to
# callers and each organization's natural order.
_TO_NATURAL = {
    Organization.BSQ: (0, 1, 2),
    Organization.BIL: (1, 0, 2),
    Organization.BIP: (1, 2, 0),
}
_FROM_NATURAL = {
    Organization.BSQ: (0, 1, 2),
    Organization.BIL: (1, 0, 2),
    Organization.BIP: (2, 0, 1),
}


# ============================================================================
# Addressing
# ============================================================================

@dataclass(frozen=True)
class PixelGeometry:
    """
    Physical layout of a pixel region.

    ``record_size`` defaults to the smallest record that fits; a label may
    declare a larger RECSIZE, in which case the tail of each record is unused.
    """

    organization: Organization
    lines: int
    samples: int
    bands: int
    sample_width: int
    prefix_bytes: int = 0
    header_bytes: int = 0
    record_size: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "organization", parse_enum(Organization, self.organization, "ORG"))
        for keyword, value in (("NL", self.lines), ("NS", self.samples), ("NB", self.bands)):
            if value < 1:
                raise InvalidSystemLabel(keyword, f"must be at least 1, got {value}")
        if self.sample_width < 1:
            raise InvalidSystemLabel("FORMAT", f"sample width must be positive, got {self.sample_width}")
        if self.prefix_bytes < 0:
            raise InvalidSystemLabel("NBB", f"must not be negative, got {self.prefix_bytes}")
        if self.header_bytes < 0:
            raise InvalidSystemLabel("NLB", f"header bytes must not be negative, got {self.header_bytes}")
        minimal = self.prefix_bytes + self.record_samples * self.sample_width
        if self.record_size is None:
            object.__setattr__(self, "record_size", minimal)
        elif self.record_size < minimal:
            raise InvalidSystemLabel("RECSIZE", f"{self.record_size} is smaller than the {minimal} bytes a record needs")

    @classmethod
    def from_system(cls, system: SystemLabel) -> "PixelGeometry":
        return cls(
            organization=system.organization,
            lines=system.lines,
            samples=system.samples,
            bands=system.bands,
            sample_width=system.sample_width,
            prefix_bytes=system.binary_prefix_bytes,
            header_bytes=system.binary_header_bytes,
            record_size=system.record_size,
        )

    @property
    def record_samples(self) -> int:
        if self.organization is Organization.BSQ:
            return self.samples
        return self.samples * self.bands

    @property
    def record_count(self) -> int:
        if self.organization is Organization.BSQ:
            return self.lines * self.bands
        return self.lines

    @property
    def region_length(self) -> int:
        return self.header_bytes + self.record_count * self.record_size

    @property
    def axes(self) -> Tuple[str, str, str]:
        return NATURAL_AXES[self.organization]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Shape in natural (outermost-first) axis order."""
        sizes = {"line": self.lines, "sample": self.samples, "band": self.bands}
        return tuple(sizes[axis] for axis in self.axes)  # type: ignore[return-value]

    @property
    def strides(self) -> Tuple[int, int, int]:
        """Byte strides matching ``shape``."""
        w = self.sample_width
        if self.organization is Organization.BSQ:
            return (self.lines * self.record_size, self.record_size, w)
        if self.organization is Organization.BIL:
            return (self.record_size, self.samples * w, w)
        return (self.record_size, self.bands * w, w)

    @property
    def first_sample_offset(self) -> int:
        return self.header_bytes + self.prefix_bytes

    def check_index(self, line: int, sample: int, band: int) -> None:
        for axis, value, size in (("line", line, self.lines), ("sample", sample, self.samples), ("band", band, self.bands)):
            if not 0 <= value < size:
                raise OutOfRange(f"{axis} {value} outside [0, {size})")

    def locate(self, line: int, sample: int, band: int) -> Tuple[int, int]:
        """(record index, sample position inside the record) of a pixel."""
        self.check_index(line, sample, band)
        if self.organization is Organization.BSQ:
            return band * self.lines + line, sample
        if self.organization is Organization.BIL:
            return line, band * self.samples + sample
        return line, sample * self.bands + band

    def offset(self, line: int, sample: int, band: int = 0) -> int:
        record, position = self.locate(line, sample, band)
        return self.header_bytes + record * self.record_size + self.prefix_bytes + position * self.sample_width

    def record_offset(self, record: int) -> int:
        if not 0 <= record < self.record_count:
            raise OutOfRange(f"record {record} outside [0, {self.record_count})")
        return self.header_bytes + record * self.record_size

    def record_axes(self, record: int) -> Tuple[int, Optional[int]]:
        """(line, band) held by a record; band is None when a record spans every band."""
        self.record_offset(record)
        if self.organization is Organization.BSQ:
            return record % self.lines, record // self.lines
        return record, None

    def iter_records(self, reverse: bool = False) -> Iterator[Tuple[int, int]]:
        """Yield (record index, offset) in storage order."""
        indices = range(self.record_count)
        for record in reversed(indices) if reverse else indices:
            yield record, self.header_bytes + record * self.record_size

    def iter_offsets(self, reverse: bool = False) -> Iterator[Tuple[int, int, int, int]]:
        """
        Yield (line, sample, band, offset) in storage order.

        Inside a record the offset steps by the sample width instead of being
        recomputed from the index.
        """
        w = -self.sample_width if reverse else self.sample_width
        outer_n, middle_n, inner_n = self.shape
        outer_range = range(outer_n - 1, -1, -1) if reverse else range(outer_n)
        middle_range = range(middle_n - 1, -1, -1) if reverse else range(middle_n)
        inner_range = range(inner_n - 1, -1, -1) if reverse else range(inner_n)
        s_outer, s_middle, _ = self.strides
        line_axis, sample_axis, band_axis = (self.axes.index(a) for a in ("line", "sample", "band"))
        for i in outer_range:
            for j in middle_range:
                offset = self.first_sample_offset + i * s_outer + j * s_middle
                if reverse:
                    offset += (inner_n - 1) * self.sample_width
                for k in inner_range:
                    index = (i, j, k)
                    yield index[line_axis], index[sample_axis], index[band_axis], offset
                    offset += w


# ============================================================================
# Sample codec
# ============================================================================

_INT_DTYPES = {DataType.BYTE: "u1", DataType.HALF: "i2", DataType.FULL: "i4"}
_REAL_DTYPES = {DataType.REAL: "f4", DataType.DOUB: "f8", DataType.COMP: "c8"}
_BYTE_ORDER = {
    IntFormat.HIGH: ">",
    IntFormat.LOW: "<",
    RealFormat.IEEE: ">",
    RealFormat.RIEEE: "<",
}


@dataclass(frozen=True)
class PixelEncoding:
    """Data type plus explicit byte-order descriptors. Never inferred from the host."""

    data_type: DataType
    int_format: IntFormat = IntFormat.HIGH
    real_format: RealFormat = RealFormat.IEEE

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_type", parse_enum(DataType, self.data_type, "FORMAT"))
        object.__setattr__(self, "int_format", parse_enum(IntFormat, self.int_format, "INTFMT"))
        object.__setattr__(self, "real_format", parse_enum(RealFormat, self.real_format, "REALFMT"))

    @classmethod
    def from_system(cls, system: SystemLabel) -> "PixelEncoding":
        return cls(system.data_type, system.int_format, system.real_format)

    @property
    def byte_width(self) -> int:
        return self.data_type.byte_width

    @property
    def is_vax(self) -> bool:
        return not self.data_type.is_integer and self.real_format is RealFormat.VAX

    @property
    def value_dtype(self) -> np.dtype:
        """Native-order dtype of decoded values."""
        if self.data_type.is_integer:
            return np.dtype(_INT_DTYPES[self.data_type])
        return np.dtype(_REAL_DTYPES[self.data_type])

    @property
    def storage_dtype(self) -> np.dtype:
        """Dtype of the bytes on disk; VAX reals have no numpy equivalent."""
        if self.data_type.is_integer:
            return np.dtype(_BYTE_ORDER[self.int_format] + _INT_DTYPES[self.data_type])
        if self.is_vax:
            raise UnsupportedEncoding(f"{self.data_type.value} in VAX format has no direct numpy dtype")
        return np.dtype(_BYTE_ORDER[self.real_format] + _REAL_DTYPES[self.data_type])


def _vax_decode(raw: np.ndarray, width: int) -> np.ndarray:
    """Decode VAX F (4 byte) or D (8 byte) floats to float64."""
    words = raw.view("<u2").reshape(-1, width // 2).astype(np.uint64)
    sign = words[:, 0] >> np.uint64(15)
    exponent = ((words[:, 0] >> np.uint64(7)) & np.uint64(0xFF)).astype(np.int64)
    fraction = words[:, 0] & np.uint64(0x7F)
    for i in range(1, words.shape[1]):
        fraction = (fraction << np.uint64(16)) | words[:, i]
    fraction_bits = 7 + 16 * (words.shape[1] - 1)
    mantissa = 0.5 + fraction.astype(np.float64) / float(2 ** (fraction_bits + 1))
    value = np.ldexp(mantissa, (exponent - 128).astype(np.int32))
    value = np.where(exponent == 0, 0.0, value)
    return np.where(sign == 1, -value, value)


def _vax_encode(values: np.ndarray, width: int) -> bytes:
    """Encode float64 values as VAX F (4 byte) or D (8 byte) floats."""
    x = np.asarray(values, dtype=np.float64).ravel()
    if not np.all(np.isfinite(x)):
        raise UnsupportedEncoding("NaN and infinity have no VAX representation")
    n_words = width // 2
    fraction_bits = 7 + 16 * (n_words - 1)
    mantissa, exponent = np.frexp(np.abs(x))
    fraction = np.rint((mantissa - 0.5) * float(2 ** (fraction_bits + 1))).astype(np.int64)
    carry = fraction >= 2**fraction_bits
    fraction = np.where(carry, 0, fraction)
    biased = exponent.astype(np.int64) + 128 + carry
    zero = (x == 0) | (biased <= 0)
    if np.any(biased[~zero] > 255):
        raise UnsupportedEncoding(f"value exceeds the VAX {'F' if width == 4 else 'D'} range")
    sign = np.where(zero, 0, (x < 0).astype(np.int64))
    biased = np.where(zero, 0, biased)
    fraction = np.where(zero, 0, fraction)

    bits = (
        (sign.astype(np.uint64) << np.uint64(16 * n_words - 1))
        | (biased.astype(np.uint64) << np.uint64(fraction_bits))
        | fraction.astype(np.uint64)
    )
    words = np.empty((x.size, n_words), dtype="<u2")
    for i in range(n_words):
        shift = np.uint64(16 * (n_words - 1 - i))
        words[:, i] = (bits >> shift) & np.uint64(0xFFFF)
    return words.tobytes()


def decode_samples(data: ByteSource, encoding: PixelEncoding) -> np.ndarray:
    """Decode a run of contiguous samples. Non-VAX data is returned as a view."""
    raw = np.frombuffer(byte_view(data), dtype=np.uint8)
    width = encoding.byte_width
    if raw.size % width:
        raise TruncatedData(
            f"{raw.size} bytes is not a whole number of {width}-byte samples", needed=width, available=raw.size % width
        )
    if not encoding.is_vax:
        return raw.view(encoding.storage_dtype)
    if encoding.data_type is DataType.COMP:
        parts = np.ascontiguousarray(_vax_decode(raw, 4).astype(np.float32))
        return parts.view(np.complex64)
    decoded = _vax_decode(raw, width)
    return decoded.astype(encoding.value_dtype)


def _check_integer_range(values: np.ndarray, encoding: PixelEncoding) -> None:
    if values.dtype.kind not in "iub":
        if values.dtype.kind != "f" or not np.all(np.mod(values, 1) == 0):
            raise UnsupportedEncoding(f"non-integral values cannot be stored as {encoding.data_type.value}")
    if values.size == 0:
        return
    info = np.iinfo(encoding.value_dtype)
    if values.min() < info.min or values.max() > info.max:
        raise UnsupportedEncoding(f"values outside [{info.min}, {info.max}] cannot be stored as {encoding.data_type.value}")


def encode_samples(values, encoding: PixelEncoding) -> bytes:
    """Encode values (any array-like) as contiguous samples."""
    values = np.asarray(values)
    if encoding.data_type.is_integer:
        _check_integer_range(values, encoding)
        return values.astype(encoding.storage_dtype).tobytes()
    if not encoding.is_vax:
        return values.astype(encoding.storage_dtype).tobytes()
    if encoding.data_type is DataType.COMP:
        values = values.astype(np.complex128).ravel()
        pairs = np.stack([values.real, values.imag], axis=1)
        return _vax_encode(pairs, 4)
    return _vax_encode(values, encoding.byte_width)


def decode_sample(window: ByteSource, encoding: PixelEncoding) -> Sample:
    """Decode one sample. Complex samples come back as a Python complex (real, imaginary)."""
    view = byte_view(window)
    width = encoding.byte_width
    if len(view) < width:
        raise TruncatedData(f"need {width} bytes for one {encoding.data_type.value} sample, have {len(view)}", width, len(view))
    return decode_samples(view[:width], encoding)[0].item()


def encode_sample(value: Sample, encoding: PixelEncoding) -> bytes:
    return encode_samples(np.asarray([value]), encoding)


# ============================================================================
# Pixel buffer
# ============================================================================

class PixelBuffer:
    """
    Pixel region of a VICAR file: binary header records plus image records.

    Wraps the caller's buffer without copying. The buffer may be shorter than
    the geometry declares; the shortfall raises TruncatedData on the first
    access that needs the missing bytes.
    """

    def __init__(self, data: ByteSource, geometry: PixelGeometry, encoding: PixelEncoding) -> None:
        self._view = byte_view(data)
        self.geometry = geometry
        self.encoding = encoding
        if encoding.byte_width != geometry.sample_width:
            raise InvalidSystemLabel("FORMAT", f"encoding width {encoding.byte_width} disagrees with geometry width {geometry.sample_width}")
        if len(self._view) < geometry.region_length:
            logger.debug("pixel region holds %d of %d declared bytes", len(self._view), geometry.region_length)

    @classmethod
    def from_system(cls, data: ByteSource, system: SystemLabel) -> "PixelBuffer":
        return cls(data, PixelGeometry.from_system(system), PixelEncoding.from_system(system))

    @classmethod
    def from_array(
        cls,
        array,
        geometry: PixelGeometry,
        encoding: PixelEncoding,
        *,
        binary_header: bytes = b"",
        prefixes: Optional[Sequence[bytes]] = None,
    ) -> "PixelBuffer":
        """Build a writable buffer from a (bands, lines, samples) array."""
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[np.newaxis]
        expected = (geometry.bands, geometry.lines, geometry.samples)
        if array.shape != expected:
            raise InvalidSystemLabel("NL", f"array shape {array.shape} does not match (bands, lines, samples) {expected}")
        if len(binary_header) != geometry.header_bytes:
            raise InvalidSystemLabel("NLB", f"binary header is {len(binary_header)} bytes, geometry declares {geometry.header_bytes}")
        if prefixes is not None and len(prefixes) != geometry.record_count:
            raise InvalidSystemLabel("NBB", f"got {len(prefixes)} prefixes for {geometry.record_count} records")

        buf = bytearray(geometry.region_length)
        buf[: geometry.header_bytes] = binary_header
        natural = np.transpose(array, _TO_NATURAL[geometry.organization])
        rows = natural.reshape(geometry.record_count, geometry.record_samples)
        encoded = encode_samples(rows, encoding)
        row_bytes = geometry.record_samples * geometry.sample_width
        for record, start in geometry.iter_records():
            if prefixes is not None:
                prefix = prefixes[record]
                if len(prefix) != geometry.prefix_bytes:
                    raise InvalidSystemLabel("NBB", f"prefix of record {record} is {len(prefix)} bytes, expected {geometry.prefix_bytes}")
                buf[start : start + geometry.prefix_bytes] = prefix
            data_start = start + geometry.prefix_bytes
            buf[data_start : data_start + row_bytes] = encoded[record * row_bytes : (record + 1) * row_bytes]
        return cls(buf, geometry, encoding)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        end = self.geometry.region_length
        return (
            self.geometry == other.geometry
            and self.encoding == other.encoding
            and self._view[:end] == other._view[:end]
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        g = self.geometry
        return (
            f"PixelBuffer({g.organization.value} {g.lines}x{g.samples}x{g.bands} "
            f"{self.encoding.data_type.value}, {self.available}/{g.region_length} bytes)"
        )

    @property
    def data(self) -> memoryview:
        return self._view

    @property
    def available(self) -> int:
        return len(self._view)

    @property
    def is_complete(self) -> bool:
        return len(self._view) >= self.geometry.region_length

    @property
    def readonly(self) -> bool:
        return self._view.readonly

    def _window(self, start: int, length: int) -> memoryview:
        if start + length > len(self._view):
            raise TruncatedData(
                f"bytes [{start}, {start + length}) lie past the end of the pixel data ({len(self._view)} bytes)",
                needed=start + length,
                available=len(self._view),
            )
        return self._view[start : start + length]

    @property
    def binary_header(self) -> memoryview:
        return self._window(0, self.geometry.header_bytes)

    def record(self, index: int) -> memoryview:
        """Whole record, prefix included."""
        return self._window(self.geometry.record_offset(index), self.geometry.record_size)

    def prefix(self, index: int) -> memoryview:
        return self._window(self.geometry.record_offset(index), self.geometry.prefix_bytes)

    def raw(self, line: int, sample: int, band: int = 0) -> memoryview:
        return self._window(self.geometry.offset(line, sample, band), self.geometry.sample_width)

    def get(self, line: int, sample: int, band: int = 0) -> Sample:
        return decode_sample(self.raw(line, sample, band), self.encoding)

    def set(self, line: int, sample: int, band: int, value: Sample) -> None:
        if self._view.readonly:
            raise TypeError("pixel buffer is read-only")
        self.raw(line, sample, band)[:] = encode_sample(value, self.encoding)

    def __getitem__(self, index: Tuple[int, int, int]) -> Sample:
        return self.get(*index)

    def __setitem__(self, index: Tuple[int, int, int], value: Sample) -> None:
        self.set(index[0], index[1], index[2], value)

    def iter_samples(self, reverse: bool = False) -> Iterator[Tuple[int, int, int, Sample]]:
        """Yield (line, sample, band, value) in storage order."""
        width = self.geometry.sample_width
        for line, sample, band, offset in self.geometry.iter_offsets(reverse=reverse):
            yield line, sample, band, decode_sample(self._window(offset, width), self.encoding)

    def to_array(self) -> np.ndarray:
        """
        Samples as a (bands, lines, samples) array.

        For byte-order-only encodings this is a strided view on the
        underlying buffer; VAX reals are decoded into a new array.
        """
        g = self.geometry
        if not self.is_complete:
            raise TruncatedData(
                f"pixel region needs {g.region_length} bytes, have {len(self._view)}",
                needed=g.region_length,
                available=len(self._view),
            )
        if not self.encoding.is_vax:
            natural = np.ndarray(
                shape=g.shape,
                dtype=self.encoding.storage_dtype,
                buffer=self._view,
                offset=g.first_sample_offset,
                strides=g.strides,
            )
        else:
            raw = np.ndarray(
                shape=g.shape + (g.sample_width,),
                dtype=np.uint8,
                buffer=self._view,
                offset=g.first_sample_offset,
                strides=g.strides + (1,),
            )
            decoded = decode_samples(np.ascontiguousarray(raw).tobytes(), self.encoding)
            natural = decoded.reshape(g.shape)
        return np.transpose(natural, _FROM_NATURAL[g.organization])
