"""
Tests for point identifier resolution
"""

import pytest

from plc_telemetry.common.config import AddressMapping, Protocol
from plc_telemetry.common.exceptions import AddressError, ValidationError
from plc_telemetry.drivers.addressing import parse_point, parse_points


# ============================================================================
# MC protocol
# ============================================================================

def test_mc_word_device_defaults_to_single_point():
    address = parse_point("D400", Protocol.MC)

    assert address.device == "D"
    assert address.offset == 400
    assert address.count == 1
    assert not address.is_bit


def test_mc_explicit_count():
    address = parse_point("D100,4", Protocol.MC)

    assert address.offset == 100
    assert address.count == 4


def test_mc_hex_devices():
    assert parse_point("X1F", Protocol.MC).offset == 0x1F
    assert parse_point("W10", Protocol.MC).offset == 0x10
    assert parse_point("B0A", Protocol.MC).offset == 0x0A


def test_mc_decimal_devices_reject_hex_digits():
    with pytest.raises(AddressError):
        parse_point("D1A", Protocol.MC)


def test_mc_bit_devices():
    for point in ("M10", "X0", "Y7", "B1", "L3"):
        assert parse_point(point, Protocol.MC).is_bit


def test_mc_zr_is_word_device():
    address = parse_point("ZR1000", Protocol.MC)

    assert address.device == "ZR"
    assert address.offset == 1000
    assert not address.is_bit


def test_mc_lowercase_and_whitespace_accepted():
    address = parse_point(" d400 ", Protocol.MC)

    assert address.device == "D"
    assert address.offset == 400
    # Result key stays exactly as registered
    assert address.point_id == " d400 "


@pytest.mark.parametrize("point", ["Q100", "D", "400", "D400,0", "D400,961", "D-1"])
def test_mc_invalid_identifiers(point):
    with pytest.raises(AddressError):
        parse_point(point, Protocol.MC)


# ============================================================================
# Modbus
# ============================================================================

def test_modbus_bare_number_is_register_offset():
    address = parse_point("50", Protocol.MODBUS)

    assert address.device == "HR"
    assert address.offset == 50


def test_modbus_linear_transform():
    mapping = AddressMapping(d_address_base=400, modbus_offset=0)

    assert parse_point("D400", Protocol.MODBUS, mapping).offset == 0
    assert parse_point("D401", Protocol.MODBUS, mapping).offset == 1


def test_modbus_transform_with_offset():
    mapping = AddressMapping(d_address_base=4000, modbus_offset=100)

    assert parse_point("D4010", Protocol.MODBUS, mapping).offset == 110


def test_modbus_negative_register_rejected():
    mapping = AddressMapping(d_address_base=400)

    with pytest.raises(AddressError) as exc_info:
        parse_point("D399", Protocol.MODBUS, mapping)
    assert exc_info.value.point_id == "D399"


def test_modbus_register_above_range_rejected():
    with pytest.raises(AddressError):
        parse_point("65536", Protocol.MODBUS)


def test_modbus_non_d_device_rejected():
    with pytest.raises(AddressError):
        parse_point("M10", Protocol.MODBUS)


# ============================================================================
# Demo and helpers
# ============================================================================

def test_demo_accepts_anything():
    assert parse_point("temperature", Protocol.DEMO).offset == 0
    assert parse_point("D4032", Protocol.DEMO).offset == 4032


def test_empty_identifier_rejected():
    with pytest.raises(AddressError):
        parse_point("  ", Protocol.DEMO)


def test_address_error_is_validation_error():
    with pytest.raises(ValidationError):
        parse_point("bogus", Protocol.MC)


def test_parse_points_keeps_order():
    addresses = parse_points(["D2", "D1", "M5"], Protocol.MC)

    assert [a.point_id for a in addresses] == ["D2", "D1", "M5"]
