"""
Tests for the VICAR label-area codec.
"""
import pytest

from vicar_codec import (
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
from vicar_errors import InvalidSystemLabel, MalformedLabel, TruncatedData, UnsupportedEncoding
from vicar_label import GroupKind, Label, PropertyGroup, PropertyLabelStore
from vicar_system import IntFormat, Organization, RealFormat, SystemLabel

SCENARIO_A = "FORMAT=BYTE  TYPE='IMAGE'  RECSIZE=4  ORG=BSQ  NL=4  NS=4  NB=1"


def _label(items: str, size: int = 512) -> bytes:
    text = f"LBLSIZE={size:08d}  {items}"
    assert len(text) <= size
    return text.ljust(size).encode("latin-1")


def test_read_label_size_zero_padded():
    """The size field is read from its fixed position."""
    assert read_label_size(_label(SCENARIO_A)) == 512


def test_read_label_size_space_padded():
    """Trailing-space padding inside the field is accepted."""
    assert read_label_size(b"LBLSIZE=512       FORMAT='BYTE'") == 512


def test_read_label_size_at_offset():
    """The field can be read from a label area that starts later in the source."""
    assert read_label_size(b"xxxx" + _label(SCENARIO_A), 4) == 512


def test_read_label_size_too_short():
    """A source shorter than the fixed header is truncated."""
    with pytest.raises(TruncatedData):
        read_label_size(b"LBLSIZE=51")


@pytest.mark.parametrize(
    "head",
    [b"LBLSIZX=00000512 ", b"LBLSIZE=00000ABC ", b"LBLSIZE=000005120 ", b"LBLSIZE=00000000 "],
)
def test_read_label_size_invalid(head):
    """Bad markers, non-digits, overlong fields and zero are rejected."""
    with pytest.raises(InvalidSystemLabel) as exc:
        read_label_size(head)
    assert exc.value.field == "LBLSIZE"


def test_scenario_a_system_label():
    """A minimal BSQ label parses to its geometry."""
    system, store = parse_label_area(_label(SCENARIO_A))
    assert system.label_size == 512
    assert system.record_size == 4
    assert system.organization is Organization.BSQ
    assert (system.lines, system.samples, system.bands) == (4, 4, 1)
    assert len(store) == 0


def test_legacy_defaults():
    """Missing INTFMT, REALFMT and HOST take the VAX-era defaults."""
    system, _ = parse_label_area(_label(SCENARIO_A))
    assert system.int_format is IntFormat.LOW
    assert system.real_format is RealFormat.VAX
    assert system.host == "VAX-VMS"
    assert system.binary_int_format is IntFormat.LOW


def test_format_synonyms():
    """WORD, LONG and COMPLEX are accepted as FORMAT synonyms."""
    system, _ = parse_label_area(_label(SCENARIO_A.replace("FORMAT=BYTE", "FORMAT='WORD'").replace("RECSIZE=4", "RECSIZE=8")))
    assert system.data_type.value == "HALF"


def test_missing_org():
    """A label without ORG fails with the ORG field named."""
    with pytest.raises(InvalidSystemLabel) as exc:
        parse_label_area(_label(SCENARIO_A.replace("ORG=BSQ", "")))
    assert exc.value.field == "ORG"


def test_unknown_org():
    """An unknown organization is an invalid system label."""
    with pytest.raises(InvalidSystemLabel) as exc:
        parse_label_area(_label(SCENARIO_A.replace("ORG=BSQ", "ORG='BIX'")))
    assert exc.value.field == "ORG"


@pytest.mark.parametrize(
    "old, new",
    [
        ("FORMAT=BYTE", "FORMAT='QUAD'"),
        ("ORG=BSQ", "ORG=BSQ  INTFMT='MIDDLE'"),
        ("ORG=BSQ", "ORG=BSQ  REALFMT='CRAY'"),
        ("ORG=BSQ", "ORG=BSQ  COMPRESS='BASIC'"),
    ],
)
def test_unsupported_encodings(old, new):
    """Unknown formats and compression are unsupported encodings."""
    with pytest.raises(UnsupportedEncoding):
        parse_label_area(_label(SCENARIO_A.replace(old, new)))


def test_recsize_too_small():
    """RECSIZE must hold one record."""
    with pytest.raises(InvalidSystemLabel) as exc:
        parse_label_area(_label(SCENARIO_A.replace("RECSIZE=4", "RECSIZE=2")))
    assert exc.value.field in ("RECSIZE", "LBLSIZE")


def test_dimension_keywords_must_agree():
    """N1..N3 must match NL/NS/NB for the organization."""
    with pytest.raises(InvalidSystemLabel) as exc:
        parse_label_area(_label(SCENARIO_A + "  N1=4  N2=5"))
    assert exc.value.field == "N2"


def test_lblsize_item_must_match_field():
    """A label area whose LBLSIZE is not a RECSIZE multiple is rejected."""
    with pytest.raises(InvalidSystemLabel):
        parse_label_area(_label(SCENARIO_A.replace("RECSIZE=4", "RECSIZE=5"), size=512))


def test_duplicate_system_keyword():
    """A repeated system keyword is a syntax fault with an offset."""
    with pytest.raises(MalformedLabel) as exc:
        parse_label_area(_label(SCENARIO_A + "  NL=4"))
    assert exc.value.offset is not None


def test_groups_are_split():
    """Unknown system keywords, properties and history end up in ordered groups."""
    items = (
        SCENARIO_A
        + "  FOO=0007  BAR='x'"
        + "  PROPERTY='GEOM'  ANGLE=1.50 <deg>"
        + "  TASK='GEN'  USER='bob'  DAT_TIM='Tue Jan 02 03:04:05 2024'  LIST=(1,2)"
    )
    _, store = parse_label_area(_label(items))
    assert [g.kind for g in store] == [GroupKind.SYSTEM, GroupKind.PROPERTY, GroupKind.HISTORY]
    assert store.system_extras.get("FOO").value == 7
    assert store.property("GEOM")["ANGLE"].unit == "deg"
    task = store.history("GEN")[0]
    assert task.user == "bob"
    assert task["LIST"].value == (1, 2)
    assert "USER" not in task


def test_non_string_user_stays_a_label():
    """USER=5 after TASK is kept as an ordinary label and written back unchanged."""
    system, store = parse_label_area(_label(SCENARIO_A + "  TASK='GEN'  USER=5"))
    task = store.history("GEN")[0]
    assert task.user is None
    assert task["USER"].value == 5

    data, _ = serialize_label_area(system, store)
    assert b"TASK='GEN'  USER=5" in data
    system2, store2 = parse_label_area(data)
    assert store2 == store
    assert PropertyGroup(GroupKind.HISTORY, "GEN", (Label("USER", 5),)).user is None


def test_unknown_keywords_round_trip():
    """Unknown items keep their text and order through parse and serialize."""
    items = SCENARIO_A + "  FOO=0007  BAR='x'  PROPERTY='GEOM'  ANGLE=1.50 <deg>  ODD=+3"
    system, store = parse_label_area(_label(items))
    data, size = serialize_label_area(system, store)
    assert b"FOO=0007  BAR='x'  PROPERTY='GEOM'  ANGLE=1.50 <deg>  ODD=+3" in data

    system2, store2 = parse_label_area(data)
    assert system2 == system
    assert store2 == store
    assert [label.raw for _, label in store2.iter_labels()] == ["0007", "'x'", "1.50", "+3"]


def test_serialized_size_is_record_multiple():
    """LBLSIZE is zero-padded, a RECSIZE multiple and equal to the area length."""
    system = SystemLabel.create("HALF", "BIL", lines=3, samples=7, bands=2)
    store = PropertyLabelStore().add_property("P", (Label("NOTE", "x" * 100),))
    data, size = serialize_label_area(system, store)
    assert len(data) == size
    assert size % system.record_size == 0
    assert data[:16] == b"LBLSIZE=%08d" % size
    assert data.rstrip(b" ").endswith(b"NOTE='" + b"x" * 100 + b"'")

    parsed, _ = parse_label_area(data)
    assert parsed.label_size == size
    assert parsed == system


def test_serialize_rejects_system_keywords_in_extras():
    """Extras that shadow a system keyword cannot be written."""
    system = SystemLabel.create("BYTE", "BSQ", lines=1, samples=1)
    store = PropertyLabelStore((PropertyGroup(GroupKind.SYSTEM, labels=(Label("NL", 3),)),))
    with pytest.raises(InvalidSystemLabel):
        serialize_label_area(system, store)


def test_system_labels_order():
    """System labels come out in canonical order."""
    system = SystemLabel.create("REAL", "BIP", lines=2, samples=3, bands=4)
    keywords = [label.keyword for label in system_labels(system)]
    assert keywords[:8] == ["LBLSIZE", "FORMAT", "TYPE", "BUFSIZ", "DIM", "EOL", "RECSIZE", "ORG"]
    values = {label.keyword: label.value for label in system_labels(system)}
    assert (values["N1"], values["N2"], values["N3"]) == (4, 3, 2)


def test_trailer_round_trip():
    """A trailer area parses back to the same groups."""
    trailer = PropertyLabelStore().add_history("LATER", (Label("NOTE", "it's"),), user="amy")
    data, size = serialize_trailer_area(trailer, 10)
    assert size % 10 == 0
    parsed_size, parsed = parse_trailer_area(b"\xff" * 3 + data, 3, 10)
    assert parsed_size == size
    assert parsed == trailer


def test_has_internal_label():
    """A label at the start or after a PDS3 label counts as internal."""
    prefix = b"PDS_VERSION_ID = PDS3\r\nEND\r\n"
    assert has_internal_label(_label(SCENARIO_A))
    assert starts_with_label(_label(SCENARIO_A))
    assert has_internal_label(prefix + _label(SCENARIO_A))
    assert not starts_with_label(prefix + _label(SCENARIO_A))
    assert not has_internal_label(b"PDS_VERSION_ID = PDS3\r\n")
    assert not has_internal_label(prefix)


def test_find_label_offset_after_pds3_label():
    """A VICAR label after a PDS3 label is found at a line start."""
    prefix = b"PDS_VERSION_ID = PDS3\r\nNOTE = \"XLBLSIZE=1\"\r\nEND\r\n"
    data = prefix + _label(SCENARIO_A) + bytes(16)
    assert find_label_offset(data) == len(prefix)


def test_find_label_offset_missing():
    """No label in range is an invalid system label."""
    with pytest.raises(InvalidSystemLabel):
        find_label_offset(b"PDS_VERSION_ID = PDS3\r\nEND\r\n")
    with pytest.raises(InvalidSystemLabel):
        find_label_offset(b" " * 100 + _label(SCENARIO_A), max_bytes=50)
