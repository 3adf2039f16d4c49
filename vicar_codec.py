"""
Label codec: label area bytes <-> (SystemLabel, PropertyLabelStore).

A label area starts with ``LBLSIZE=`` and a fixed 8-byte size field, so the
length of the area can be read before anything else is tokenized. Writing
reserves the same field, renders every item, rounds the length up to a
multiple of RECSIZE and only then fills the size in.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple, Union

from vicar_errors import InvalidSystemLabel, MalformedLabel, TruncatedData
from vicar_label import (
    GROUP_MARKERS,
    TASK_MARKER,
    USER_KEYWORD,
    GroupKind,
    Label,
    LabelTokenizer,
    PropertyGroup,
    PropertyLabelStore,
    format_value,
    parse_value,
)
from vicar_system import (
    LEGACY_HOST,
    LEGACY_INTFMT,
    LEGACY_REALFMT,
    RECOGNIZED_SYSTEM_KEYWORDS,
    REQUIRED_SYSTEM_KEYWORDS,
    DataType,
    IntFormat,
    Organization,
    RealFormat,
    SystemLabel,
    parse_enum,
)

logger = logging.getLogger(__name__)

ByteSource = Union[bytes, bytearray, memoryview]

LBLSIZE_MARKER = b"LBLSIZE="
LBLSIZE_FIELD_OFFSET = len(LBLSIZE_MARKER)
LBLSIZE_FIELD_WIDTH = 8
LBLSIZE_HEADER_LENGTH = LBLSIZE_FIELD_OFFSET + LBLSIZE_FIELD_WIDTH
PAD_CHAR = " "
ITEM_SEPARATOR = "  "
LABEL_ENCODING = "latin-1"

_FIELD_TERMINATORS = b" \t\r\n\0"


def byte_view(source: ByteSource) -> memoryview:
    """Flat unsigned-byte view of any buffer (bytes, bytearray, mmap, numpy memmap)."""
    view = source if isinstance(source, memoryview) else memoryview(source)
    if view.format != "B" or view.ndim != 1:
        view = view.cast("B")
    return view


# ============================================================================
# LBLSIZE sub-grammar
# ============================================================================

def read_label_size(source: ByteSource, offset: int = 0) -> int:
    """Read the fixed-position LBLSIZE field of the label area starting at ``offset``."""
    view = byte_view(source)
    end = offset + LBLSIZE_HEADER_LENGTH
    if len(view) < end:
        raise TruncatedData(
            f"need {LBLSIZE_HEADER_LENGTH} bytes at {offset} to read LBLSIZE, have {max(len(view) - offset, 0)}",
            needed=end,
            available=len(view),
        )
    head = bytes(view[offset:end])
    if not head.startswith(LBLSIZE_MARKER):
        raise InvalidSystemLabel("LBLSIZE", f"label area at byte {offset} does not start with LBLSIZE=")
    field = head[LBLSIZE_FIELD_OFFSET:].decode(LABEL_ENCODING)
    digits = field.rstrip(" \0")
    if not digits or not all("0" <= c <= "9" for c in digits):
        raise InvalidSystemLabel("LBLSIZE", f"size field {field!r} is not a decimal integer")
    if len(view) > end and view[end] not in _FIELD_TERMINATORS:
        raise InvalidSystemLabel("LBLSIZE", f"size field is wider than {LBLSIZE_FIELD_WIDTH} bytes")
    size = int(digits)
    if size <= 0:
        raise InvalidSystemLabel("LBLSIZE", f"must be positive, got {size}")
    return size


def starts_with_label(source: ByteSource) -> bool:
    """True if the source starts with a VICAR label area."""
    view = byte_view(source)
    return bytes(view[: len(LBLSIZE_MARKER)]) == LBLSIZE_MARKER


def has_internal_label(source: ByteSource, *, max_bytes: int = 2_000_000) -> bool:
    """True if the source carries a VICAR label, at its start or after a PDS3 label."""
    if starts_with_label(source):
        return True
    try:
        find_label_offset(source, max_bytes=max_bytes)
    except InvalidSystemLabel:
        return False
    return True


def find_label_offset(source: ByteSource, *, max_bytes: int = 2_000_000) -> int:
    """
    Locate the first VICAR label area within the first ``max_bytes`` bytes.

    Some PDS3 products carry a PDS3 label first and the VICAR label after it.
    A candidate must sit at the start of the source or after whitespace and
    must have a readable LBLSIZE field.
    """
    view = byte_view(source)
    head = bytes(view[:max_bytes])
    pos = head.find(LBLSIZE_MARKER)
    while pos != -1:
        if pos == 0 or head[pos - 1] in _FIELD_TERMINATORS:
            try:
                read_label_size(view, pos)
            except (InvalidSystemLabel, TruncatedData):
                pass
            else:
                logger.debug("VICAR label found at byte %d", pos)
                return pos
        pos = head.find(LBLSIZE_MARKER, pos + 1)
    raise InvalidSystemLabel("LBLSIZE", f"no VICAR label found in the first {max_bytes} bytes")


def _label_area(view: memoryview, offset: int, size: int) -> memoryview:
    if len(view) < offset + size:
        raise TruncatedData(
            f"label area of {size} bytes at {offset} runs past the end of the data ({len(view)} bytes)",
            needed=offset + size,
            available=len(view),
        )
    return view[offset : offset + size]


# ============================================================================
# Parse
# ============================================================================

def _parse_items(
    area: memoryview, offset: int, system_keywords: Tuple[str, ...]
) -> Tuple[Dict[str, Label], PropertyLabelStore]:
    """Split the items of one label area into system labels and property groups."""
    system: Dict[str, Label] = {}
    groups: list[PropertyGroup] = []

    kind = GroupKind.SYSTEM
    name = ""
    user: Optional[str] = None
    labels: list[Label] = []
    seen: set[str] = set()
    expect_user = False

    def flush() -> None:
        if kind is GroupKind.SYSTEM and not labels:
            return
        groups.append(PropertyGroup(kind, name, tuple(labels), user=user))

    for token in LabelTokenizer(area, base_offset=offset):
        if token.keyword in GROUP_MARKERS:
            flush()
            group_name = parse_value(token.raw_value, token.offset)
            if not isinstance(group_name, str) or not group_name:
                raise MalformedLabel(f"{token.keyword} needs a non-empty string name", token.offset)
            kind = GroupKind.HISTORY if token.keyword == TASK_MARKER else GroupKind.PROPERTY
            name, user, labels, seen = group_name, None, [], set()
            expect_user = kind is GroupKind.HISTORY
            continue

        label = Label.from_token(token)
        if expect_user:
            expect_user = False
            if label.keyword == USER_KEYWORD and isinstance(label.value, str):
                user = label.value
                continue

        if kind is GroupKind.SYSTEM and label.keyword in system_keywords:
            if label.keyword in system:
                raise MalformedLabel(f"duplicate system keyword {label.keyword}", token.offset)
            system[label.keyword] = label
            continue

        if label.keyword in seen:
            raise MalformedLabel(f"duplicate keyword {label.keyword}", token.offset)
        seen.add(label.keyword)
        labels.append(label)

    flush()
    return system, PropertyLabelStore(tuple(groups))


def _int_item(items: Dict[str, Label], keyword: str, default: Optional[int] = None) -> int:
    label = items.get(keyword)
    if label is None:
        if default is None:
            raise InvalidSystemLabel(keyword, "required keyword is missing")
        return default
    if not isinstance(label.value, int):
        raise InvalidSystemLabel(keyword, f"expected an integer, got {label.value_text()}")
    return label.value


def _str_item(items: Dict[str, Label], keyword: str, default: Optional[str] = None) -> str:
    label = items.get(keyword)
    if label is None:
        if default is None:
            raise InvalidSystemLabel(keyword, "required keyword is missing")
        return default
    if not isinstance(label.value, str):
        raise InvalidSystemLabel(keyword, f"expected a string, got {label.value_text()}")
    return label.value


def build_system_label(items: Dict[str, Label]) -> SystemLabel:
    """Validate the recognized system items and build a SystemLabel."""
    for keyword in REQUIRED_SYSTEM_KEYWORDS:
        if keyword not in items:
            raise InvalidSystemLabel(keyword, "required keyword is missing")

    data_type = parse_enum(DataType, _str_item(items, "FORMAT"), "FORMAT")
    organization = parse_enum(Organization, _str_item(items, "ORG"), "ORG")
    int_format = parse_enum(IntFormat, _str_item(items, "INTFMT", LEGACY_INTFMT), "INTFMT")
    real_format = parse_enum(RealFormat, _str_item(items, "REALFMT", LEGACY_REALFMT), "REALFMT")
    host = _str_item(items, "HOST", LEGACY_HOST)

    eol = _int_item(items, "EOL", 0)
    if eol not in (0, 1):
        raise InvalidSystemLabel("EOL", f"must be 0 or 1, got {eol}")

    record_size = _int_item(items, "RECSIZE")
    system = SystemLabel(
        record_size=record_size,
        organization=organization,
        data_type=data_type,
        lines=_int_item(items, "NL"),
        samples=_int_item(items, "NS"),
        bands=_int_item(items, "NB"),
        label_size=_int_item(items, "LBLSIZE"),
        type=_str_item(items, "TYPE", "IMAGE"),
        dim=_int_item(items, "DIM", 3),
        eol=bool(eol),
        binary_header_lines=_int_item(items, "NLB", 0),
        binary_prefix_bytes=_int_item(items, "NBB", 0),
        host=host,
        int_format=int_format,
        real_format=real_format,
        binary_host=_str_item(items, "BHOST", host),
        binary_int_format=_str_item(items, "BINTFMT", int_format.value),
        binary_real_format=_str_item(items, "BREALFMT", real_format.value),
        binary_label_type=_str_item(items, "BLTYPE", ""),
        buffer_size=_int_item(items, "BUFSIZ", record_size),
        compression=_str_item(items, "COMPRESS", "NONE"),
    )

    for keyword, expected in zip(("N1", "N2", "N3"), system.dimensions):
        if keyword in items and _int_item(items, keyword) != expected:
            raise InvalidSystemLabel(
                keyword,
                f"{items[keyword].value} disagrees with NL/NS/NB for {organization.value} (expected {expected})",
            )
    if "N4" in items and _int_item(items, "N4") not in (0, 1):
        raise InvalidSystemLabel("N4", f"4-dimensional images are not supported, got {items['N4'].value}")
    return system


def parse_label_area(source: ByteSource, offset: int = 0) -> Tuple[SystemLabel, PropertyLabelStore]:
    """Parse the label area at ``offset`` into its System Label and Property groups."""
    view = byte_view(source)
    size = read_label_size(view, offset)
    area = _label_area(view, offset, size)
    items, store = _parse_items(area, offset, RECOGNIZED_SYSTEM_KEYWORDS)
    system = build_system_label(items)
    if system.label_size != size:
        raise InvalidSystemLabel("LBLSIZE", f"item value {system.label_size} disagrees with size field {size}")
    logger.debug(
        "label area at %d: LBLSIZE=%d RECSIZE=%d ORG=%s %dx%dx%d, %d groups",
        offset,
        size,
        system.record_size,
        system.organization.value,
        system.lines,
        system.samples,
        system.bands,
        len(store),
    )
    return system, store


def parse_trailer_area(source: ByteSource, offset: int, record_size: int) -> Tuple[int, PropertyLabelStore]:
    """Parse an EOL trailer label area. Returns (LBLSIZE, groups)."""
    view = byte_view(source)
    size = read_label_size(view, offset)
    if size % record_size:
        raise InvalidSystemLabel("LBLSIZE", f"trailer size {size} is not a multiple of RECSIZE {record_size}")
    area = _label_area(view, offset, size)
    items, store = _parse_items(area, offset, ("LBLSIZE",))
    if items["LBLSIZE"].value != size:
        raise InvalidSystemLabel("LBLSIZE", f"trailer item value {items['LBLSIZE'].value} disagrees with size field {size}")
    logger.debug("trailer label at %d: LBLSIZE=%d, %d groups", offset, size, len(store))
    return size, store


# ============================================================================
# Serialize
# ============================================================================

def system_labels(system: SystemLabel) -> list[Label]:
    """The System Label as Labels, LBLSIZE first, in canonical order."""
    n1, n2, n3, n4 = system.dimensions
    values = (
        ("LBLSIZE", system.label_size),
        ("FORMAT", system.data_type.value),
        ("TYPE", system.type),
        ("BUFSIZ", system.buffer_size),
        ("DIM", system.dim),
        ("EOL", int(system.eol)),
        ("RECSIZE", system.record_size),
        ("ORG", system.organization.value),
        ("NL", system.lines),
        ("NS", system.samples),
        ("NB", system.bands),
        ("N1", n1),
        ("N2", n2),
        ("N3", n3),
        ("N4", n4),
        ("NBB", system.binary_prefix_bytes),
        ("NLB", system.binary_header_lines),
        ("HOST", system.host),
        ("INTFMT", system.int_format.value),
        ("REALFMT", system.real_format.value),
        ("BHOST", system.binary_host),
        ("BINTFMT", system.binary_int_format.value),
        ("BREALFMT", system.binary_real_format.value),
        ("BLTYPE", system.binary_label_type),
    )
    return [Label(keyword, value) for keyword, value in values]


def render_system_items(system: SystemLabel) -> list[str]:
    """System items after LBLSIZE, in canonical order."""
    return [label.render() for label in system_labels(system)[1:]]


def render_group(group: PropertyGroup) -> list[str]:
    items: list[str] = []
    if group.kind is not GroupKind.SYSTEM:
        items.append(f"{group.kind.value}={format_value(group.name)}")
    if group.user is not None:
        items.append(f"{USER_KEYWORD}={format_value(group.user)}")
    items.extend(label.render() for label in group.labels)
    return items


def _check_extras(store: PropertyLabelStore, reserved: Tuple[str, ...]) -> None:
    extras = store.system_extras
    if extras is None:
        return
    for label in extras.labels:
        if label.keyword in reserved:
            raise InvalidSystemLabel(label.keyword, "is a system keyword and cannot be stored as an extra label")


def _assemble(items: list[str], record_size: int) -> Tuple[bytes, int]:
    placeholder = LBLSIZE_MARKER.decode(LABEL_ENCODING) + "0" * LBLSIZE_FIELD_WIDTH
    text = ITEM_SEPARATOR.join([placeholder] + items)
    size = -(-len(text) // record_size) * record_size
    digits = str(size)
    if len(digits) > LBLSIZE_FIELD_WIDTH:
        raise InvalidSystemLabel("LBLSIZE", f"label area of {size} bytes does not fit the size field")
    text = placeholder[:LBLSIZE_FIELD_OFFSET] + digits.zfill(LBLSIZE_FIELD_WIDTH) + text[len(placeholder) :]
    text = text.ljust(size, PAD_CHAR)
    return text.encode(LABEL_ENCODING), size


def serialize_label_area(system: SystemLabel, properties: PropertyLabelStore) -> Tuple[bytes, int]:
    """Render the label area. Returns (bytes, LBLSIZE)."""
    _check_extras(properties, RECOGNIZED_SYSTEM_KEYWORDS)
    items = render_system_items(system)
    for group in properties:
        items.extend(render_group(group))
    data, size = _assemble(items, system.record_size)
    logger.debug("rendered label area: LBLSIZE=%d, %d groups", size, len(properties))
    return data, size


def serialize_trailer_area(trailer: PropertyLabelStore, record_size: int) -> Tuple[bytes, int]:
    """Render an EOL trailer label area. Returns (bytes, LBLSIZE)."""
    _check_extras(trailer, ("LBLSIZE",))
    items: list[str] = []
    for group in trailer:
        items.extend(render_group(group))
    return _assemble(items, record_size)
