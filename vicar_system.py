"""
VICAR System Label: the required keywords that fix file geometry and encoding.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Type, TypeVar, Union

from vicar_errors import InvalidSystemLabel, UnsupportedEncoding

# Canonical order in which system keywords are written.
SYSTEM_KEYWORDS: Tuple[str, ...] = (
    "LBLSIZE",
    "FORMAT",
    "TYPE",
    "BUFSIZ",
    "DIM",
    "EOL",
    "RECSIZE",
    "ORG",
    "NL",
    "NS",
    "NB",
    "N1",
    "N2",
    "N3",
    "N4",
    "NBB",
    "NLB",
    "HOST",
    "INTFMT",
    "REALFMT",
    "BHOST",
    "BINTFMT",
    "BREALFMT",
    "BLTYPE",
)
# COMPRESS is read (to reject compressed files) but never written.
RECOGNIZED_SYSTEM_KEYWORDS: Tuple[str, ...] = SYSTEM_KEYWORDS + ("COMPRESS",)
REQUIRED_SYSTEM_KEYWORDS: Tuple[str, ...] = ("LBLSIZE", "FORMAT", "RECSIZE", "ORG", "NL", "NS", "NB")

# Defaults the VICAR documentation assigns to files that omit these keywords.
LEGACY_HOST = "VAX-VMS"
LEGACY_INTFMT = "LOW"
LEGACY_REALFMT = "VAX"

# Defaults for newly written files.
DEFAULT_HOST = "JAVA"


class Organization(enum.Enum):
    BSQ = "BSQ"  # band sequential
    BIL = "BIL"  # band interleaved by line
    BIP = "BIP"  # band interleaved by pixel


class DataType(enum.Enum):
    BYTE = "BYTE"
    HALF = "HALF"
    FULL = "FULL"
    REAL = "REAL"
    DOUB = "DOUB"
    COMP = "COMP"

    @property
    def byte_width(self) -> int:
        return DATA_TYPE_WIDTHS[self]

    @property
    def is_integer(self) -> bool:
        return self in (DataType.BYTE, DataType.HALF, DataType.FULL)

    @classmethod
    def parse(cls, text: str) -> "DataType":
        name = text.strip().upper()
        name = DATA_TYPE_SYNONYMS.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise UnsupportedEncoding(f"FORMAT {text!r} is not a VICAR data type") from None


DATA_TYPE_WIDTHS = {
    DataType.BYTE: 1,
    DataType.HALF: 2,
    DataType.FULL: 4,
    DataType.REAL: 4,
    DataType.DOUB: 8,
    DataType.COMP: 8,
}
DATA_TYPE_SYNONYMS = {"WORD": "HALF", "LONG": "FULL", "COMPLEX": "COMP"}


class IntFormat(enum.Enum):
    HIGH = "HIGH"  # big-endian
    LOW = "LOW"  # little-endian


class RealFormat(enum.Enum):
    IEEE = "IEEE"  # big-endian IEEE 754
    RIEEE = "RIEEE"  # little-endian IEEE 754
    VAX = "VAX"  # VAX F (4 byte) / D (8 byte)


_E = TypeVar("_E", bound=enum.Enum)


def parse_enum(enum_cls: Type[_E], value: Union[str, _E], keyword: str) -> _E:
    """Coerce label text to an enum member, raising UnsupportedEncoding if unknown."""
    if isinstance(value, enum_cls):
        return value
    if enum_cls is DataType:
        return DataType.parse(str(value))  # type: ignore[return-value]
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        allowed = [m.value for m in enum_cls]
        if enum_cls is Organization:
            raise InvalidSystemLabel(keyword, f"{value!r} is not one of {allowed}") from None
        raise UnsupportedEncoding(f"{keyword} {value!r} is not one of {allowed}") from None


@dataclass(frozen=True)
class SystemLabel:
    """
    Structured view of the mandatory VICAR keywords.

    ``label_size`` is the LBLSIZE of a parsed file. It is recomputed on every
    serialization, takes no part in equality and is 0 on a label that has
    not been written yet.
    """

    record_size: int
    organization: Organization
    data_type: DataType
    lines: int
    samples: int
    bands: int = 1
    label_size: int = field(default=0, compare=False)
    type: str = "IMAGE"
    dim: int = 3
    eol: bool = False
    binary_header_lines: int = 0
    binary_prefix_bytes: int = 0
    host: str = DEFAULT_HOST
    int_format: IntFormat = IntFormat.HIGH
    real_format: RealFormat = RealFormat.IEEE
    binary_host: Optional[str] = None
    binary_int_format: Optional[IntFormat] = None
    binary_real_format: Optional[RealFormat] = None
    binary_label_type: str = ""
    buffer_size: Optional[int] = None
    compression: str = "NONE"

    def __post_init__(self) -> None:
        set_ = object.__setattr__
        set_(self, "organization", parse_enum(Organization, self.organization, "ORG"))
        set_(self, "data_type", parse_enum(DataType, self.data_type, "FORMAT"))
        set_(self, "int_format", parse_enum(IntFormat, self.int_format, "INTFMT"))
        set_(self, "real_format", parse_enum(RealFormat, self.real_format, "REALFMT"))
        if self.binary_host is None:
            set_(self, "binary_host", self.host)
        if self.binary_int_format is None:
            set_(self, "binary_int_format", self.int_format)
        else:
            set_(self, "binary_int_format", parse_enum(IntFormat, self.binary_int_format, "BINTFMT"))
        if self.binary_real_format is None:
            set_(self, "binary_real_format", self.real_format)
        else:
            set_(self, "binary_real_format", parse_enum(RealFormat, self.binary_real_format, "BREALFMT"))
        if self.buffer_size is None:
            set_(self, "buffer_size", self.record_size)
        set_(self, "eol", bool(self.eol))
        self.validate()

    def validate(self) -> None:
        """Check the cross-field invariants and raise on the first violation."""
        if str(self.compression).strip().upper() != "NONE":
            raise UnsupportedEncoding(f"COMPRESS {self.compression!r} is not supported")
        for keyword, value in (("NL", self.lines), ("NS", self.samples), ("NB", self.bands)):
            if value < 1:
                raise InvalidSystemLabel(keyword, f"must be at least 1, got {value}")
        if self.record_size < 1:
            raise InvalidSystemLabel("RECSIZE", f"must be positive, got {self.record_size}")
        if self.binary_prefix_bytes < 0:
            raise InvalidSystemLabel("NBB", f"must not be negative, got {self.binary_prefix_bytes}")
        if self.binary_header_lines < 0:
            raise InvalidSystemLabel("NLB", f"must not be negative, got {self.binary_header_lines}")
        if self.dim not in (2, 3):
            raise InvalidSystemLabel("DIM", f"must be 2 or 3, got {self.dim}")
        if self.dim == 2 and self.bands != 1:
            raise InvalidSystemLabel("DIM", f"a 2-dimensional image cannot have {self.bands} bands")
        needed = self.minimal_record_size
        if self.record_size < needed:
            raise InvalidSystemLabel(
                "RECSIZE",
                f"{self.record_size} is smaller than the {needed} bytes one "
                f"{self.organization.value} record needs",
            )
        if self.label_size < 0 or self.label_size % self.record_size:
            raise InvalidSystemLabel(
                "LBLSIZE", f"{self.label_size} is not a multiple of RECSIZE {self.record_size}"
            )

    @classmethod
    def create(
        cls,
        data_type: Union[DataType, str],
        organization: Union[Organization, str],
        lines: int,
        samples: int,
        bands: int = 1,
        *,
        prefix_bytes: int = 0,
        header_lines: int = 0,
        int_format: Union[IntFormat, str] = IntFormat.HIGH,
        real_format: Union[RealFormat, str] = RealFormat.IEEE,
        host: str = DEFAULT_HOST,
    ) -> "SystemLabel":
        """Build a writer-path label with the smallest valid RECSIZE."""
        data_type = parse_enum(DataType, data_type, "FORMAT")
        organization = parse_enum(Organization, organization, "ORG")
        record_samples = samples if organization is Organization.BSQ else samples * bands
        return cls(
            record_size=prefix_bytes + record_samples * data_type.byte_width,
            organization=organization,
            data_type=data_type,
            lines=lines,
            samples=samples,
            bands=bands,
            binary_header_lines=header_lines,
            binary_prefix_bytes=prefix_bytes,
            host=host,
            int_format=int_format,
            real_format=real_format,
        )

    @property
    def sample_width(self) -> int:
        return self.data_type.byte_width

    @property
    def record_samples(self) -> int:
        if self.organization is Organization.BSQ:
            return self.samples
        return self.samples * self.bands

    @property
    def minimal_record_size(self) -> int:
        return self.binary_prefix_bytes + self.record_samples * self.sample_width

    @property
    def record_count(self) -> int:
        if self.organization is Organization.BSQ:
            return self.lines * self.bands
        return self.lines

    @property
    def binary_header_bytes(self) -> int:
        return self.binary_header_lines * self.record_size

    @property
    def pixel_region_length(self) -> int:
        """Bytes between the label area and the EOL trailer (binary header included)."""
        return self.binary_header_bytes + self.record_count * self.record_size

    @property
    def dimensions(self) -> Tuple[int, int, int, int]:
        """N1..N4: fastest- to slowest-varying axis lengths."""
        if self.organization is Organization.BSQ:
            return (self.samples, self.lines, self.bands, 0)
        if self.organization is Organization.BIL:
            return (self.samples, self.bands, self.lines, 0)
        return (self.bands, self.samples, self.lines, 0)
