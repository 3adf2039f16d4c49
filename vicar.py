"""
VICAR image files: label area, pixel region and optional EOL trailer.

Provides:
- Whole-file parsing over bytes, mmap or numpy memmap (parse_vicar, read_vicar)
- Serialization with recomputed LBLSIZE and EOL (serialize_vicar, write_vicar)
- Writer-path construction from numpy arrays (create_vicar)
- Discovery of VICAR labels embedded after a PDS3 label (find_label_offset)

The label, system and pixel layers live in vicar_label, vicar_system,
vicar_codec and vicar_pixels; the names most callers need are re-exported here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

import numpy as np

from vicar_codec import (
    ByteSource,
    byte_view,
    find_label_offset,
    has_internal_label,
    parse_label_area,
    parse_trailer_area,
    read_label_size,
    serialize_label_area,
    serialize_trailer_area,
    starts_with_label,
    system_labels,
)
from vicar_errors import (
    InvalidSystemLabel,
    MalformedLabel,
    OutOfRange,
    TruncatedData,
    UnsupportedEncoding,
    VicarError,
)
from vicar_label import GroupKind, Label, PropertyGroup, PropertyLabelStore
from vicar_pixels import PixelBuffer, PixelEncoding, PixelGeometry, Sample
from vicar_system import (
    DEFAULT_HOST,
    DataType,
    IntFormat,
    Organization,
    RealFormat,
    SystemLabel,
    parse_enum,
)

__all__ = [
    "DataType",
    "GroupKind",
    "IntFormat",
    "InvalidSystemLabel",
    "Label",
    "MalformedLabel",
    "Organization",
    "OutOfRange",
    "PixelBuffer",
    "PixelEncoding",
    "PixelGeometry",
    "PropertyGroup",
    "PropertyLabelStore",
    "RealFormat",
    "SystemLabel",
    "TruncatedData",
    "UnsupportedEncoding",
    "VicarError",
    "VicarFile",
    "create_vicar",
    "find_label_offset",
    "has_internal_label",
    "parse_vicar",
    "read_label_size",
    "read_vicar",
    "serialize_vicar",
    "starts_with_label",
    "write_vicar",
]

logger = logging.getLogger(__name__)

# numpy kind+size -> VICAR data type, for create_vicar without an explicit type
_DTYPE_DATA_TYPES = {
    ("u", 1): DataType.BYTE,
    ("i", 2): DataType.HALF,
    ("i", 4): DataType.FULL,
    ("f", 4): DataType.REAL,
    ("f", 8): DataType.DOUB,
    ("c", 8): DataType.COMP,
}


# ============================================================================
# Dataclasses
# ============================================================================

@dataclass(frozen=True)
class VicarFile:
    """
    A parsed or newly built VICAR file.

    ``system.eol`` must agree with whether a trailer is present.
    ``label_offset`` is where the label area starts in the source; it is
    non-zero for labels embedded after a PDS3 label and takes no part in
    equality.
    """

    system: SystemLabel
    properties: PropertyLabelStore
    pixels: PixelBuffer
    trailer: Optional[PropertyLabelStore] = None
    label_offset: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if self.system.eol != (self.trailer is not None):
            state = "present" if self.trailer is not None else "absent"
            raise InvalidSystemLabel("EOL", f"EOL={int(self.system.eol)} but the trailer is {state}")
        if self.pixels.geometry != PixelGeometry.from_system(self.system):
            raise InvalidSystemLabel("RECSIZE", "pixel geometry disagrees with the system label")
        if self.pixels.encoding != PixelEncoding.from_system(self.system):
            raise InvalidSystemLabel("FORMAT", "pixel encoding disagrees with the system label")

    @property
    def geometry(self) -> PixelGeometry:
        return self.pixels.geometry

    @property
    def encoding(self) -> PixelEncoding:
        return self.pixels.encoding

    @property
    def binary_header(self) -> memoryview:
        return self.pixels.binary_header

    @property
    def pixel_offset(self) -> int:
        """
        Absolute offset of the pixel region in the source.

        A file built by create_vicar has no LBLSIZE until it is written, so
        it has no absolute offsets either; parse the serialized bytes first.
        """
        if self.system.label_size == 0:
            raise InvalidSystemLabel("LBLSIZE", "file has not been serialized, so its offsets are unknown")
        return self.label_offset + self.system.label_size

    def sample_offset(self, line: int, sample: int, band: int = 0) -> int:
        """Absolute byte offset of one sample in the source file."""
        return self.pixel_offset + self.geometry.offset(line, sample, band)

    def get_sample(self, line: int, sample: int, band: int = 0) -> Sample:
        return self.pixels.get(line, sample, band)

    def to_array(self) -> np.ndarray:
        return self.pixels.to_array()

    def iter_groups(self) -> Iterator[PropertyGroup]:
        yield from self.properties
        if self.trailer is not None:
            yield from self.trailer

    def find(self, keyword: str) -> list[Label]:
        """Every non-system label named ``keyword``: label area first, then trailer."""
        found = self.properties.find(keyword)
        if self.trailer is not None:
            found += self.trailer.find(keyword)
        return found

    def get(self, keyword: str) -> Optional[Label]:
        """
        Look a keyword up in the system fields, then the properties, then
        the trailer. Among property and trailer labels the latest one wins.
        """
        keyword = keyword.upper()
        for label in system_labels(self.system):
            if label.keyword == keyword:
                return label
        found = self.find(keyword)
        return found[-1] if found else None

    def property(self, name: str) -> Optional[PropertyGroup]:
        group = self.properties.property(name)
        if group is None and self.trailer is not None:
            group = self.trailer.property(name)
        return group

    def history(self, task: Optional[str] = None) -> list[PropertyGroup]:
        found = self.properties.history(task)
        if self.trailer is not None:
            found += self.trailer.history(task)
        return found

    def with_history(
        self,
        task: str,
        labels: Sequence[Label] = (),
        *,
        user: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "VicarFile":
        """Copy of the file with one more History group in the label area."""
        properties = self.properties.add_history(task, tuple(labels), user=user, timestamp=timestamp)
        return replace(self, properties=properties)

    def with_properties(self, properties: PropertyLabelStore) -> "VicarFile":
        return replace(self, properties=properties)

    def with_trailer(self, trailer: Optional[PropertyLabelStore]) -> "VicarFile":
        """Copy of the file with the trailer replaced and EOL set to match."""
        system = replace(self.system, eol=trailer is not None)
        return replace(self, system=system, trailer=trailer)


# ============================================================================
# Parse
# ============================================================================

def parse_vicar(source: ByteSource, *, offset: Optional[int] = None) -> VicarFile:
    """
    Parse a VICAR file held in memory.

    ``offset`` is where the label area starts. When omitted it is 0 for a
    file that starts with ``LBLSIZE=`` and otherwise the first embedded
    label found by find_label_offset. Pixel data is not copied, and a short
    pixel region only fails when a missing byte is accessed. With EOL=1 the
    trailer sits after the pixel region, so that case needs every byte up
    front.
    """
    view = byte_view(source)
    if offset is None:
        offset = 0 if starts_with_label(view) else find_label_offset(view)
    elif offset < 0:
        raise OutOfRange(f"label offset {offset} is negative")

    system, properties = parse_label_area(view, offset)
    geometry = PixelGeometry.from_system(system)
    encoding = PixelEncoding.from_system(system)
    start = offset + system.label_size
    end = start + geometry.region_length
    pixels = PixelBuffer(view[start:end], geometry, encoding)

    trailer = None
    if system.eol:
        if len(view) < end:
            raise TruncatedData(
                f"EOL trailer expected at byte {end}, data ends at {len(view)}",
                needed=end,
                available=len(view),
            )
        _, trailer = parse_trailer_area(view, end, system.record_size)

    logger.debug(
        "VICAR file at %d: %s %s, pixels at %d (%d of %d bytes), trailer=%s",
        offset,
        system.organization.value,
        system.data_type.value,
        start,
        pixels.available,
        geometry.region_length,
        trailer is not None,
    )
    return VicarFile(system, properties, pixels, trailer, label_offset=offset)


def read_vicar(path: str | Path, *, memory_map: bool = False, offset: Optional[int] = None) -> VicarFile:
    """Read a VICAR file from disk, optionally through a read-only memory map."""
    path = Path(path)
    if memory_map:
        data = np.memmap(path, dtype=np.uint8, mode="r")
    else:
        data = path.read_bytes()
    logger.debug("reading %s (%d bytes, memory_map=%s)", path, len(data), memory_map)
    return parse_vicar(data, offset=offset)


# ============================================================================
# Serialize
# ============================================================================

def serialize_vicar(vf: VicarFile) -> bytes:
    """Render a complete file: label area, pixel region, then the trailer if any."""
    pixels = vf.pixels
    if not pixels.is_complete:
        raise TruncatedData(
            f"pixel region needs {pixels.geometry.region_length} bytes, have {pixels.available}",
            needed=pixels.geometry.region_length,
            available=pixels.available,
        )
    system = replace(vf.system, eol=vf.trailer is not None)
    label, size = serialize_label_area(system, vf.properties)
    parts = [label, bytes(pixels.data[: pixels.geometry.region_length])]
    if vf.trailer is not None:
        trailer, _ = serialize_trailer_area(vf.trailer, system.record_size)
        parts.append(trailer)
    out = b"".join(parts)
    logger.debug("serialized VICAR file: LBLSIZE=%d, %d bytes total", size, len(out))
    return out


def write_vicar(path: str | Path, vf: VicarFile) -> Path:
    path = Path(path)
    path.write_bytes(serialize_vicar(vf))
    return path


# ============================================================================
# Writer path
# ============================================================================

def _infer_data_type(dtype: np.dtype) -> DataType:
    try:
        return _DTYPE_DATA_TYPES[(dtype.kind, dtype.itemsize)]
    except KeyError:
        raise UnsupportedEncoding(f"numpy dtype {dtype} has no VICAR data type; pass data_type explicitly") from None


def create_vicar(
    array,
    *,
    data_type: Union[DataType, str, None] = None,
    organization: Union[Organization, str] = Organization.BSQ,
    int_format: Union[IntFormat, str] = IntFormat.HIGH,
    real_format: Union[RealFormat, str] = RealFormat.IEEE,
    host: str = DEFAULT_HOST,
    prefix_bytes: int = 0,
    binary_header: bytes = b"",
    prefixes: Optional[Sequence[bytes]] = None,
    properties: Optional[PropertyLabelStore] = None,
    trailer: Optional[PropertyLabelStore] = None,
) -> VicarFile:
    """
    Build a new VICAR file from a (bands, lines, samples) or (lines, samples) array.

    ``binary_header`` must be a whole number of records long; its length
    sets NLB. ``prefixes`` holds one NBB-byte prefix per record.
    """
    array = np.asarray(array)
    if array.ndim == 2:
        array = array[np.newaxis]
    if array.ndim != 3:
        raise InvalidSystemLabel("DIM", f"expected a 2- or 3-dimensional array, got {array.ndim} dimensions")
    data_type = _infer_data_type(array.dtype) if data_type is None else parse_enum(DataType, data_type, "FORMAT")
    bands, lines, samples = array.shape

    system = SystemLabel.create(
        data_type,
        organization,
        lines,
        samples,
        bands,
        prefix_bytes=prefix_bytes,
        int_format=int_format,
        real_format=real_format,
        host=host,
    )
    header_lines, remainder = divmod(len(binary_header), system.record_size)
    if remainder:
        raise InvalidSystemLabel(
            "NLB",
            f"binary header of {len(binary_header)} bytes is not a whole number of {system.record_size}-byte records",
        )
    system = replace(system, binary_header_lines=header_lines, eol=trailer is not None)

    pixels = PixelBuffer.from_array(
        array,
        PixelGeometry.from_system(system),
        PixelEncoding.from_system(system),
        binary_header=bytes(binary_header),
        prefixes=prefixes,
    )
    return VicarFile(system, properties if properties is not None else PropertyLabelStore(), pixels, trailer)
