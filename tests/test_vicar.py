"""
Tests for whole-file VICAR parsing and writing.
"""
from datetime import datetime

import numpy as np
import pytest

from vicar import (
    DataType,
    InvalidSystemLabel,
    Label,
    Organization,
    PropertyLabelStore,
    TruncatedData,
    UnsupportedEncoding,
    VicarFile,
    create_vicar,
    parse_vicar,
    read_vicar,
    serialize_vicar,
    write_vicar,
)

WHEN = datetime(2024, 1, 2, 3, 4, 5)


def _label(items: str, size: int = 512) -> bytes:
    text = f"LBLSIZE={size:08d}  {items}"
    return text.ljust(size).encode("latin-1")


def _scenario_a() -> bytes:
    return _label("FORMAT=BYTE  TYPE='IMAGE'  RECSIZE=4  ORG=BSQ  NL=4  NS=4  NB=1") + bytes(range(16))


def _scenario_b() -> bytes:
    return _label("FORMAT=BYTE  TYPE='IMAGE'  RECSIZE=8  ORG=BIL  NL=4  NS=4  NB=2") + bytes(range(32))


def test_scenario_a():
    """BSQ sample (2, 1, 0) sits 9 bytes into the pixel region."""
    vf = parse_vicar(_scenario_a())
    assert (vf.system.lines, vf.system.samples, vf.system.bands) == (4, 4, 1)
    assert vf.sample_offset(2, 1, 0) == vf.system.label_size + 9
    assert vf.get_sample(2, 1, 0) == 9
    assert vf.to_array()[0, 2, 1] == 9


def test_scenario_b():
    """BIL sample (1, 0, 1) sits one record plus one band line into the region."""
    vf = parse_vicar(_scenario_b())
    expected = vf.system.label_size + vf.system.record_size * 1 + vf.system.samples * 1 * 1
    assert vf.sample_offset(line=1, sample=0, band=1) == expected == 512 + 12
    assert vf.get_sample(1, 0, 1) == 12
    assert parse_vicar(_scenario_a()).sample_offset(1, 0, 0) != expected


def test_missing_org_gives_no_file():
    """A label area without ORG fails with the field named."""
    data = _label("FORMAT=BYTE  RECSIZE=4  NL=4  NS=4  NB=1") + bytes(16)
    with pytest.raises(InvalidSystemLabel) as exc:
        parse_vicar(data)
    assert exc.value.field == "ORG"


def test_truncated_pixels_fail_lazily():
    """Parsing succeeds; only the access past the end fails."""
    vf = parse_vicar(_scenario_a()[:-1])
    assert vf.get_sample(0, 0) == 0
    assert vf.get_sample(3, 2) == 14
    with pytest.raises(TruncatedData):
        vf.get_sample(3, 3)
    with pytest.raises(TruncatedData):
        vf.to_array()
    with pytest.raises(TruncatedData):
        serialize_vicar(vf)


def test_legacy_little_endian_file():
    """A file without INTFMT is read as little-endian."""
    data = _label("FORMAT='HALF'  RECSIZE=4  ORG='BSQ'  NL=1  NS=2  NB=1", size=128) + b"\x01\x00\x00\x01"
    vf = parse_vicar(data)
    assert vf.to_array().tolist() == [[[1, 256]]]


def test_get_searches_system_then_labels():
    """get looks at system fields first, then the latest property or history label."""
    vf = create_vicar(np.zeros((2, 3), dtype=np.uint8))
    vf = vf.with_history("GEN", [Label("NL", 99), Label("GAIN", 1.5)], timestamp=WHEN)
    vf = vf.with_history("FIX", [Label("GAIN", 2.0)], timestamp=WHEN)
    assert vf.get("nl").value == 2
    assert vf.get("ORG").value == "BSQ"
    assert vf.get("GAIN").value == 2.0
    assert [label.value for label in vf.find("GAIN")] == [1.5, 2.0]
    assert vf.get("MISSING") is None


@pytest.mark.parametrize("organization", ["BSQ", "BIL", "BIP"])
@pytest.mark.parametrize(
    "dtype, int_format, real_format",
    [
        (np.uint8, "HIGH", "IEEE"),
        (np.int16, "LOW", "IEEE"),
        (np.int32, "HIGH", "RIEEE"),
        (np.float32, "LOW", "VAX"),
        (np.float64, "HIGH", "IEEE"),
        (np.complex64, "LOW", "RIEEE"),
    ],
)
def test_round_trip(organization, dtype, int_format, real_format):
    """parse(serialize(x)) == x, with header, prefixes and history."""
    array = (np.arange(3 * 4 * 5) % 120).reshape(3, 4, 5).astype(dtype)
    vf = create_vicar(
        array,
        organization=organization,
        int_format=int_format,
        real_format=real_format,
        prefix_bytes=3,
        prefixes=[b"abc"] * (12 if organization == "BSQ" else 4),
        properties=PropertyLabelStore().add_property("GEOM", (Label("ANGLE", 0.25), Label("NAMES", ("a", "b")))),
    )
    vf = vf.with_history("MAKER", [Label("NOTE", "it's")], user="amy", timestamp=WHEN)

    data = serialize_vicar(vf)
    parsed = parse_vicar(data)
    assert parsed == vf
    assert parsed.system.label_size % parsed.system.record_size == 0
    assert data[: parsed.system.label_size].startswith(b"LBLSIZE=%08d" % parsed.system.label_size)
    assert len(data) == parsed.system.label_size + parsed.system.pixel_region_length
    np.testing.assert_array_equal(parsed.to_array(), array)
    assert bytes(parsed.pixels.prefix(0)) == b"abc"


def test_binary_header():
    """The binary header takes whole records ahead of the image records."""
    header = bytes(range(10)) * 2
    vf = create_vicar(np.ones((2, 10), dtype=np.uint8), binary_header=header)
    assert vf.system.binary_header_lines == 2
    parsed = parse_vicar(serialize_vicar(vf))
    assert bytes(parsed.binary_header) == header
    assert parsed.sample_offset(0, 0) == parsed.system.label_size + 20

    with pytest.raises(InvalidSystemLabel) as exc:
        create_vicar(np.ones((2, 10), dtype=np.uint8), binary_header=bytes(15))
    assert exc.value.field == "NLB"


def test_unwritten_file_has_no_absolute_offsets():
    """A created file has no LBLSIZE yet, so absolute offsets raise until it is parsed."""
    vf = create_vicar(np.arange(16, dtype=np.uint8).reshape(4, 4))
    assert vf.system.label_size == 0
    with pytest.raises(InvalidSystemLabel) as exc:
        vf.sample_offset(2, 1)
    assert exc.value.field == "LBLSIZE"
    assert vf.geometry.offset(2, 1, 0) == 9

    data = serialize_vicar(vf)
    parsed = parse_vicar(data)
    assert parsed.sample_offset(2, 1) == parsed.system.label_size + 9
    assert data[parsed.sample_offset(2, 1)] == 9


def test_eol_trailer_round_trip():
    """A trailer is written after the pixels and sets EOL."""
    trailer = PropertyLabelStore().add_history("LATER", (Label("NOTE", "late"),), timestamp=WHEN)
    vf = create_vicar(np.arange(6, dtype=np.int16).reshape(2, 3), trailer=trailer)
    assert vf.system.eol

    data = serialize_vicar(vf)
    parsed = parse_vicar(data)
    assert parsed.system.eol
    assert parsed.trailer == trailer
    assert parsed == vf
    assert parsed.get("NOTE").value == "late"
    assert [g.task for g in parsed.history()] == ["LATER"]

    end = parsed.system.label_size + parsed.system.pixel_region_length
    with pytest.raises(TruncatedData):
        parse_vicar(data[: end - 1])


def test_with_trailer_sets_eol():
    """Adding or dropping the trailer keeps EOL in step."""
    vf = create_vicar(np.zeros((1, 1), dtype=np.uint8))
    with_trailer = vf.with_trailer(PropertyLabelStore())
    assert with_trailer.system.eol
    assert not with_trailer.with_trailer(None).system.eol
    assert parse_vicar(serialize_vicar(with_trailer)).trailer == PropertyLabelStore()


def test_eol_must_match_trailer():
    """A file claiming EOL=1 needs a trailer."""
    vf = create_vicar(np.zeros((1, 1), dtype=np.uint8))
    eol_system = vf.with_trailer(PropertyLabelStore()).system
    with pytest.raises(InvalidSystemLabel) as exc:
        VicarFile(eol_system, vf.properties, vf.pixels)
    assert exc.value.field == "EOL"


def test_history_is_append_only():
    """with_history leaves the original file untouched."""
    vf = create_vicar(np.zeros((1, 1), dtype=np.uint8))
    once = vf.with_history("A", timestamp=WHEN)
    twice = once.with_history("B", timestamp=WHEN)
    assert len(vf.properties) == 0
    assert len(once.properties) == 1
    assert [g.task for g in parse_vicar(serialize_vicar(twice)).history()] == ["A", "B"]


def test_embedded_label():
    """A VICAR label after a PDS3 label is found and addressed from its offset."""
    prefix = b"PDS_VERSION_ID = PDS3\r\nRECORD_BYTES = 4\r\nEND\r\n    "
    data = prefix + _scenario_a()
    vf = parse_vicar(data)
    assert vf.label_offset == len(prefix)
    assert vf.sample_offset(2, 1, 0) == len(prefix) + 512 + 9
    assert data[vf.sample_offset(2, 1, 0)] == 9
    assert vf == parse_vicar(_scenario_a())
    assert parse_vicar(data, offset=len(prefix)) == vf


def test_create_vicar_infers_data_type():
    """The data type follows the array dtype unless given."""
    assert create_vicar(np.zeros((1, 1), dtype=np.float32)).system.data_type is DataType.REAL
    assert create_vicar(np.zeros((1, 1), dtype=np.complex64)).system.data_type is DataType.COMP
    with pytest.raises(UnsupportedEncoding):
        create_vicar(np.zeros((1, 1), dtype=np.uint16))
    vf = create_vicar(np.full((1, 2), 40000, dtype=np.uint16), data_type="FULL", organization=Organization.BIP)
    assert vf.get_sample(0, 1) == 40000
    with pytest.raises(UnsupportedEncoding):
        create_vicar(np.full((1, 2), 40000, dtype=np.uint16), data_type="HALF")


def test_writer_defaults():
    """New files are big-endian IEEE from the JAVA host."""
    vf = create_vicar(np.zeros((1, 1), dtype=np.uint8))
    assert vf.get("INTFMT").value == "HIGH"
    assert vf.get("REALFMT").value == "IEEE"
    assert vf.get("HOST").value == "JAVA"


def test_read_write_files(tmp_path):
    """Files written to disk read back, with and without a memory map."""
    array = np.arange(24, dtype=np.float64).reshape(2, 3, 4)
    vf = create_vicar(array, organization="BIL")
    path = write_vicar(tmp_path / "image.vic", vf)

    plain = read_vicar(path)
    mapped = read_vicar(path, memory_map=True)
    assert plain == vf
    assert mapped == vf
    assert mapped.pixels.readonly
    np.testing.assert_array_equal(mapped.to_array(), array)
