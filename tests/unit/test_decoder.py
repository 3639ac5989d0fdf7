"""Tests for device payload decoders."""
from datetime import datetime

import pytest

from timeclock.device.decoder import (
    CHECK_IN,
    CHECK_OUT,
    DeviceUser,
    ProtocolDecodeError,
    decode_attendance_line,
    decode_attendance_logs,
    decode_device_info,
    decode_users,
    encode_user_line,
    verify_method_name,
)

SAMPLE_BUFFER = (
    "1\t2025-01-06 08:00:00\t0\t1\t0\t0\n"
    "1\t2025-01-06 17:00:00\t1\t1\t0\t0\n"
    "2\t2025-01-06 08:15:00\t0\t2\t0\t0\n"
    "2\t2025-01-06 17:30:00\t1\t7\t0\t0\n"
)


class TestDecodeAttendanceLogs:
    def test_decodes_every_line(self):
        punches = decode_attendance_logs(SAMPLE_BUFFER)
        assert len(punches) == 4

    def test_first_punch_fields(self):
        punch = decode_attendance_logs(SAMPLE_BUFFER)[0]
        assert punch.device_user_id == "1"
        assert punch.timestamp == datetime(2025, 1, 6, 8, 0, 0)
        assert punch.direction == CHECK_IN
        assert punch.verify_method == "fingerprint"
        assert punch.work_code == "0"

    def test_status_zero_is_check_in_anything_else_check_out(self):
        punches = decode_attendance_logs(
            "5\t2025-01-06 08:00:00\t0\n"
            "5\t2025-01-06 12:00:00\t1\n"
            "5\t2025-01-06 12:30:00\t4\n"
            "5\t2025-01-06 13:00:00\t5\n"
        )
        assert [p.direction for p in punches] == [CHECK_IN, CHECK_OUT, CHECK_OUT, CHECK_OUT]

    def test_accepts_bytes(self):
        punches = decode_attendance_logs(SAMPLE_BUFFER.encode("utf-8"))
        assert len(punches) == 4

    def test_preserves_buffer_order(self):
        punches = decode_attendance_logs(SAMPLE_BUFFER)
        assert [p.device_user_id for p in punches] == ["1", "1", "2", "2"]

    def test_lines_with_fewer_than_three_fields_dropped(self):
        punches = decode_attendance_logs(
            "1\t2025-01-06 08:00:00\n"
            "garbage\n"
            "1\t2025-01-06 17:00:00\t1\t1\t0\t0\n"
        )
        assert len(punches) == 1
        assert punches[0].direction == CHECK_OUT

    def test_bad_timestamp_line_dropped_rest_kept(self):
        punches = decode_attendance_logs(
            "1\tnot-a-date\t0\t1\t0\t0\n"
            "1\t2025-01-06 17:00:00\t1\t1\t0\t0\n"
        )
        assert len(punches) == 1

    def test_blank_lines_and_crlf_ignored(self):
        punches = decode_attendance_logs(
            "\r\n1\t2025-01-06 08:00:00\t0\t1\t0\t0\r\n\r\n"
        )
        assert len(punches) == 1
        assert punches[0].timestamp == datetime(2025, 1, 6, 8, 0)

    def test_empty_buffer(self):
        assert decode_attendance_logs("") == []
        assert decode_attendance_logs(b"") == []

    def test_missing_verify_code_defaults_to_password(self):
        punch = decode_attendance_logs("1\t2025-01-06 08:00:00\t0\n")[0]
        assert punch.verify_method == "password"
        assert punch.work_code == ""

    def test_iso_t_separator_accepted(self):
        punch = decode_attendance_logs("1\t2025-01-06T08:00:00\t0\t1\n")[0]
        assert punch.timestamp == datetime(2025, 1, 6, 8, 0)


class TestDecodeAttendanceLine:
    def test_short_line_raises(self):
        with pytest.raises(ProtocolDecodeError):
            decode_attendance_line("1\t2025-01-06 08:00:00")

    def test_non_numeric_status_raises(self):
        with pytest.raises(ProtocolDecodeError, match="status"):
            decode_attendance_line("1\t2025-01-06 08:00:00\tIN")

    def test_empty_user_id_raises(self):
        with pytest.raises(ProtocolDecodeError):
            decode_attendance_line("\t2025-01-06 08:00:00\t0")


class TestVerifyMethodName:
    @pytest.mark.parametrize("code,name", [
        ("0", "password"),
        ("1", "fingerprint"),
        ("2", "card"),
        ("3", "password+fingerprint"),
        ("4", "password+card"),
        ("5", "fingerprint+card"),
        ("6", "password+fingerprint+card"),
        ("7", "face"),
    ])
    def test_table(self, code, name):
        assert verify_method_name(code) == name

    def test_unknown_code(self):
        assert verify_method_name("15") == "unknown"

    def test_non_numeric_code(self):
        assert verify_method_name("x") == "unknown"


class TestDecodeUsers:
    def test_full_line(self):
        users = decode_users("2\tEmployee 2\t12345678\t\t1\t1\t0\t1\n")
        assert users == [DeviceUser("2", "Employee 2", "12345678", 1)]

    def test_fingerprint_count_defaults_to_zero(self):
        users = decode_users("1\tEmployee 1\t\n")
        assert users[0].fingerprint_count == 0
        assert users[0].card_number == ""

    def test_single_field_line_dropped(self):
        assert decode_users("1\n") == []

    def test_bad_fingerprint_count_is_zero(self):
        users = decode_users("1\tA\t\t\t1\t1\t0\tmany\n")
        assert users[0].fingerprint_count == 0

    def test_to_dict_uses_camel_case(self):
        assert DeviceUser("1", "A", "99", 2).to_dict() == {
            "userId": "1",
            "userName": "A",
            "cardNumber": "99",
            "fingerprintCount": 2,
        }

    def test_encode_user_line_is_readable_by_decoder(self):
        user = DeviceUser("7", "Grace", "555", 3)
        assert decode_users(encode_user_line(user)) == [user]


class TestDecodeDeviceInfo:
    def test_newline_separated_pairs(self):
        info = decode_device_info(b"deviceName=F18\nserialNumber=ABC123\nfirmwareVersion=6.60\n")
        assert info == {"deviceName": "F18", "serialNumber": "ABC123", "firmwareVersion": "6.60"}

    def test_nul_separated_and_tilde_keys(self):
        info = decode_device_info(b"~SerialNumber=XYZ\x00~Platform=ZMM220\x00")
        assert info == {"SerialNumber": "XYZ", "Platform": "ZMM220"}

    def test_lines_without_equals_ignored(self):
        assert decode_device_info("junk\nplatform=ZMM220") == {"platform": "ZMM220"}

    def test_empty_payload(self):
        assert decode_device_info(b"") == {}
