"""
VICAR label tokenizer and label model.

A VICAR label area is a run of ``KEYWORD=VALUE`` items separated by
whitespace. Values are integers, reals, single-quoted strings (``''`` escapes
a quote) or parenthesized comma-separated lists of those. Items after the
system section are grouped by ``PROPERTY='name'`` and ``TASK='name'`` markers.

Goals:
- Keep the source text of every value so unknown items round-trip unchanged.
- Keep group order; History groups are only ever appended.
"""

from __future__ import annotations

import enum
import numbers
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterator, Optional, Tuple, Union

from vicar_errors import MalformedLabel

LabelScalar = Union[int, float, str]
LabelValue = Union[LabelScalar, Tuple[LabelScalar, ...]]

PROPERTY_MARKER = "PROPERTY"
TASK_MARKER = "TASK"
USER_KEYWORD = "USER"
DATE_TIME_KEYWORD = "DAT_TIM"
GROUP_MARKERS = (PROPERTY_MARKER, TASK_MARKER)

# VICAR writes DAT_TIM in ctime() layout.
DATE_TIME_FORMAT = "%a %b %d %H:%M:%S %Y"

_KEYWORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_REAL_RE = re.compile(r"[+-]?(?:[0-9]+\.[0-9]*|\.[0-9]+|[0-9]+)(?:[Ee][+-]?[0-9]+)?")
# Text written into a label area: printable ASCII only.
_TEXT_RE = re.compile(r"[ -~]*")
# Units also exclude <, > and quotes, and have no outer blanks.
_UNIT_RE = re.compile(r"[!-&(-;=?-~](?:[ !-&(-;=?-~]*[!-&(-;=?-~])?")


# ============================================================================
# Values
# ============================================================================

def _unquote(raw: str) -> str:
    return raw[1:-1].replace("''", "'")


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _check_text(text: str, what: str) -> None:
    if not _TEXT_RE.fullmatch(text):
        raise MalformedLabel(f"{what} {text!r} is not printable ASCII")


def _check_unit(unit: str) -> None:
    if not _UNIT_RE.fullmatch(unit):
        raise MalformedLabel(f"unit {unit!r} cannot be written between < and >")


def _parse_scalar(raw: str, offset: Optional[int] = None) -> LabelScalar:
    """Parse a scalar VICAR value (quoted string, int, real or bare word)."""
    s = raw.strip()
    if not s:
        raise MalformedLabel("empty value", offset)
    if s[0] == "'":
        if len(s) < 2 or s[-1] != "'":
            raise MalformedLabel("unterminated quoted string", offset)
        return _unquote(s)
    if s[0] in "()":
        raise MalformedLabel("nested list values are not allowed", offset)
    if _INT_RE.fullmatch(s):
        return int(s)
    if _REAL_RE.fullmatch(s):
        return float(s)
    return s


def _split_list(inner: str, offset: Optional[int]) -> list[str]:
    parts: list[str] = []
    start = 0
    in_quote = False
    for i, c in enumerate(inner):
        if c == "'":
            in_quote = not in_quote
        elif c == "," and not in_quote:
            parts.append(inner[start:i])
            start = i + 1
    if in_quote:
        raise MalformedLabel("unterminated quoted string in list", offset)
    parts.append(inner[start:])
    return parts


def parse_value(raw: str, offset: Optional[int] = None) -> LabelValue:
    """Parse the raw text of a value into an int, float, str or tuple."""
    s = raw.strip()
    if s.startswith("("):
        if not s.endswith(")"):
            raise MalformedLabel("unbalanced parentheses", offset)
        inner = s[1:-1]
        if not inner.strip():
            return tuple()
        return tuple(_parse_scalar(p, offset) for p in _split_list(inner, offset))
    return _parse_scalar(s, offset)


def _format_scalar(value: LabelScalar) -> str:
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, int):
        return str(value)
    if value != value or value in (float("inf"), float("-inf")):
        raise MalformedLabel(f"cannot write non-finite real {value!r}")
    return repr(float(value))


def format_value(value: LabelValue) -> str:
    """Render a value as VICAR label text."""
    if isinstance(value, tuple):
        return "(" + ",".join(_format_scalar(v) for v in value) + ")"
    return _format_scalar(value)


def _normalize_scalar(value: object) -> LabelScalar:
    if isinstance(value, bool):
        raise MalformedLabel(f"boolean values are not representable: {value!r}")
    if isinstance(value, str):
        return value
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        return float(value)
    raise MalformedLabel(f"unsupported label value type {type(value).__name__}")


def _normalize_value(value: object) -> LabelValue:
    if isinstance(value, (tuple, list)):
        return tuple(_normalize_scalar(v) for v in value)
    return _normalize_scalar(value)


# ============================================================================
# Tokenizer
# ============================================================================

@dataclass(frozen=True)
class Token:
    keyword: str
    raw_value: str
    offset: int
    unit: Optional[str] = None


class LabelTokenizer:
    """
    Split a label area into ``Token``s.

    Iterating starts a fresh scan every time, so a tokenizer can be walked
    more than once. Text after the first NUL byte is padding and is ignored,
    as is trailing whitespace.
    """

    def __init__(self, data: Union[bytes, bytearray, memoryview, str], *, base_offset: int = 0) -> None:
        if isinstance(data, str):
            text = data
        else:
            text = bytes(data).decode("latin-1")
        nul = text.find("\0")
        if nul != -1:
            text = text[:nul]
        self.text = text
        self.base_offset = base_offset

    def __iter__(self) -> Iterator[Token]:
        return self._scan()

    def _skip_space(self, pos: int) -> int:
        text = self.text
        while pos < len(text) and text[pos].isspace():
            pos += 1
        return pos

    def _scan_quoted(self, pos: int) -> int:
        text = self.text
        i = pos + 1
        while True:
            close = text.find("'", i)
            if close == -1:
                raise MalformedLabel("unterminated quoted string", self.base_offset + pos)
            if text.startswith("''", close):
                i = close + 2
                continue
            return close + 1

    def _scan_list(self, pos: int) -> int:
        text = self.text
        depth = 0
        i = pos
        while i < len(text):
            c = text[i]
            if c == "'":
                i = self._scan_quoted(i)
                continue
            if c == "(":
                depth += 1
            elif c == ")":
                depth -= 1
                if depth == 0:
                    return i + 1
            i += 1
        raise MalformedLabel("unbalanced parentheses", self.base_offset + pos)

    def _scan_value(self, pos: int) -> int:
        text = self.text
        c = text[pos]
        if c == "'":
            return self._scan_quoted(pos)
        if c == "(":
            return self._scan_list(pos)
        if c == ")":
            raise MalformedLabel("unbalanced parentheses", self.base_offset + pos)
        end = pos
        while end < len(text) and not text[end].isspace() and text[end] != "<":
            if text[end] in "'()":
                raise MalformedLabel(f"unexpected {text[end]!r} in value", self.base_offset + end)
            end += 1
        if end == pos:
            raise MalformedLabel("missing value before unit", self.base_offset + pos)
        return end

    def _scan(self) -> Iterator[Token]:
        text = self.text
        base = self.base_offset
        pos = self._skip_space(0)
        while pos < len(text):
            start = pos
            m = _KEYWORD_RE.match(text, pos)
            if not m:
                raise MalformedLabel(f"expected a keyword, found {text[pos]!r}", base + pos)
            keyword = m.group(0).upper()
            pos = self._skip_space(m.end())
            if pos >= len(text) or text[pos] != "=":
                raise MalformedLabel(f"keyword {keyword} is not followed by '='", base + pos)
            pos = self._skip_space(pos + 1)
            if pos >= len(text):
                raise MalformedLabel(f"keyword {keyword} has no value", base + pos)
            value_start = pos
            pos = self._scan_value(pos)
            raw = text[value_start:pos]

            unit = None
            look = self._skip_space(pos)
            if look < len(text) and text[look] == "<":
                close = text.find(">", look)
                if close == -1:
                    raise MalformedLabel("unterminated unit annotation", base + look)
                unit = text[look + 1 : close].strip()
                pos = close + 1

            yield Token(keyword=keyword, raw_value=raw, offset=base + start, unit=unit)
            pos = self._skip_space(pos)


def tokenize(data: Union[bytes, bytearray, memoryview, str], *, base_offset: int = 0) -> LabelTokenizer:
    return LabelTokenizer(data, base_offset=base_offset)


# ============================================================================
# Label model
# ============================================================================

@dataclass(frozen=True)
class Label:
    """
    One ``KEYWORD=VALUE`` item.

    ``raw`` holds the source text of a parsed value. It is written back
    verbatim on serialization and takes no part in equality.
    """

    keyword: str
    value: LabelValue
    unit: Optional[str] = None
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        keyword = str(self.keyword).strip().upper()
        if not _KEYWORD_RE.fullmatch(keyword):
            raise MalformedLabel(f"invalid keyword {self.keyword!r}")
        object.__setattr__(self, "keyword", keyword)
        object.__setattr__(self, "value", _normalize_value(self.value))
        if self.raw is None:
            values = self.value if isinstance(self.value, tuple) else (self.value,)
            for value in values:
                if isinstance(value, str):
                    _check_text(value, f"{keyword} value")
            if self.unit is not None:
                _check_unit(self.unit)

    @classmethod
    def from_token(cls, token: Token) -> "Label":
        value = parse_value(token.raw_value, token.offset)
        return cls(token.keyword, value, unit=token.unit, raw=token.raw_value)

    def with_value(self, value: LabelValue, unit: Optional[str] = None) -> "Label":
        return replace(self, value=value, unit=unit, raw=None)

    def value_text(self) -> str:
        text = self.raw if self.raw is not None else format_value(self.value)
        if self.unit is not None:
            text = f"{text} <{self.unit}>"
        return text

    def render(self) -> str:
        return f"{self.keyword}={self.value_text()}"

    def as_int(self) -> int:
        if isinstance(self.value, int):
            return self.value
        raise ValueError(f"{self.keyword} is not an integer: {self.value!r}")

    def as_float(self) -> float:
        if isinstance(self.value, (int, float)):
            return float(self.value)
        raise ValueError(f"{self.keyword} is not numeric: {self.value!r}")

    def as_str(self) -> str:
        if isinstance(self.value, str):
            return self.value
        return format_value(self.value)

    def as_tuple(self) -> Tuple[LabelScalar, ...]:
        if isinstance(self.value, tuple):
            return self.value
        return (self.value,)


class GroupKind(enum.Enum):
    SYSTEM = "SYSTEM"
    PROPERTY = PROPERTY_MARKER
    HISTORY = TASK_MARKER


@dataclass(frozen=True)
class PropertyGroup:
    """
    An ordered run of labels.

    SYSTEM groups hold unrecognized keywords found in the system section and
    have no name. PROPERTY groups start with ``PROPERTY='name'``. HISTORY
    groups start with ``TASK='name'``, optionally followed by ``USER``.
    """

    kind: GroupKind
    name: str = ""
    labels: Tuple[Label, ...] = ()
    user: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", tuple(self.labels))
        if self.kind is GroupKind.SYSTEM:
            if self.name or self.user is not None:
                raise MalformedLabel("system groups carry neither a name nor a user")
        elif not self.name:
            raise MalformedLabel(f"{self.kind.value} group needs a name")
        else:
            _check_text(self.name, f"{self.kind.value} name")
        if self.user is not None and self.kind is not GroupKind.HISTORY:
            raise MalformedLabel("only history groups carry a user")
        if self.user is not None:
            _check_text(self.user, USER_KEYWORD)

        seen: set[str] = set()
        for label in self.labels:
            if label.keyword in GROUP_MARKERS:
                raise MalformedLabel(f"{label.keyword} is a group marker, not a label")
            if label.keyword in seen:
                raise MalformedLabel(f"duplicate keyword {label.keyword} in {self.describe()}")
            seen.add(label.keyword)
        if (
            self.kind is GroupKind.HISTORY
            and self.user is None
            and self.labels
            and self.labels[0].keyword == USER_KEYWORD
            and isinstance(self.labels[0].value, str)
        ):
            raise MalformedLabel("a USER label directly after TASK must be given as the group user")

    @property
    def task(self) -> Optional[str]:
        return self.name if self.kind is GroupKind.HISTORY else None

    def describe(self) -> str:
        if self.kind is GroupKind.SYSTEM:
            return "system section"
        return f"{self.kind.value}={self.name!r}"

    def get(self, keyword: str) -> Optional[Label]:
        keyword = keyword.upper()
        for label in self.labels:
            if label.keyword == keyword:
                return label
        return None

    def __getitem__(self, keyword: str) -> Label:
        label = self.get(keyword)
        if label is None:
            raise KeyError(keyword)
        return label

    def __contains__(self, keyword: object) -> bool:
        return isinstance(keyword, str) and self.get(keyword) is not None

    def __iter__(self) -> Iterator[Label]:
        return iter(self.labels)

    def __len__(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class PropertyLabelStore:
    """
    Ordered Property and History groups of one label area.

    The store is immutable: ``append`` and friends return a new store and
    never touch existing groups, so processing history only grows.
    """

    groups: Tuple[PropertyGroup, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "groups", tuple(self.groups))
        for i, group in enumerate(self.groups):
            if group.kind is GroupKind.SYSTEM and i != 0:
                raise MalformedLabel("a system group can only lead the store")

    def __iter__(self) -> Iterator[PropertyGroup]:
        return iter(self.groups)

    def __len__(self) -> int:
        return len(self.groups)

    def __getitem__(self, index: int) -> PropertyGroup:
        return self.groups[index]

    def append(self, group: PropertyGroup) -> "PropertyLabelStore":
        return PropertyLabelStore(self.groups + (group,))

    def add_property(self, name: str, labels: Tuple[Label, ...] = ()) -> "PropertyLabelStore":
        return self.append(PropertyGroup(GroupKind.PROPERTY, name, tuple(labels)))

    def add_history(
        self,
        task: str,
        labels: Tuple[Label, ...] = (),
        *,
        user: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "PropertyLabelStore":
        """Append a History group, stamping DAT_TIM unless one is supplied."""
        labels = tuple(labels)
        if not any(label.keyword == DATE_TIME_KEYWORD for label in labels):
            when = timestamp if timestamp is not None else datetime.now()
            labels = (Label(DATE_TIME_KEYWORD, when.strftime(DATE_TIME_FORMAT)),) + labels
        return self.append(PropertyGroup(GroupKind.HISTORY, task, labels, user=user))

    @property
    def system_extras(self) -> Optional[PropertyGroup]:
        if self.groups and self.groups[0].kind is GroupKind.SYSTEM:
            return self.groups[0]
        return None

    def properties(self, name: Optional[str] = None) -> list[PropertyGroup]:
        return [
            g
            for g in self.groups
            if g.kind is GroupKind.PROPERTY and (name is None or g.name.upper() == name.upper())
        ]

    def property(self, name: str) -> Optional[PropertyGroup]:
        found = self.properties(name)
        return found[0] if found else None

    def history(self, task: Optional[str] = None) -> list[PropertyGroup]:
        return [
            g
            for g in self.groups
            if g.kind is GroupKind.HISTORY and (task is None or g.name.upper() == task.upper())
        ]

    def iter_labels(self) -> Iterator[Tuple[PropertyGroup, Label]]:
        for group in self.groups:
            for label in group.labels:
                yield group, label

    def find(self, keyword: str) -> list[Label]:
        """All labels named ``keyword``, in history order."""
        keyword = keyword.upper()
        return [label for _, label in self.iter_labels() if label.keyword == keyword]

    def get(self, keyword: str) -> Optional[Label]:
        """The most recent label named ``keyword``."""
        found = self.find(keyword)
        return found[-1] if found else None
