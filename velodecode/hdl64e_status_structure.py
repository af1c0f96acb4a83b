# %%
from enum import Enum, IntEnum, IntFlag

import numpy as np

# one laser's calibration as it is spread over three status cycles
dtype_laser_status = np.dtype(
    [
        ("laser_id", "u1"),
        ("vertical_correction", "<i2"),  # 0.01 degrees
        ("rotational_correction", "<i2"),  # 0.01 degrees
        ("distance_correction", "<i2"),  # mm
        ("distance_correction_x", "<i2"),  # mm
        ("distance_correction_y", "<i2"),  # mm
        ("vertical_offset", "<i2"),  # mm
        ("horizontal_offset", "<i2"),  # mm
        ("focal_distance", "<i2"),  # mm
        ("focal_slope", "<i2"),  # 0.1
        ("min_intensity", "u1"),
        ("max_intensity", "u1"),
    ]
)

# unit parameters, the last three cycles of a status sequence
dtype_sensor_state = np.dtype(
    [
        ("rpm", "<u2"),
        ("fov_start", "<u2"),  # 0.01 degrees
        ("fov_end", "<u2"),  # 0.01 degrees
        ("real_life_time", "<u2"),  # hours
        ("ip_source", "u1", 4),
        ("ip_dest", "u1", 4),
        ("return_type", "u1"),
        ("not_used_1", "u1"),
        ("power_level", "u1"),
        ("not_used_2", "u1", 2),
    ]
)


class StatusCycleConstants(Enum):
    # every cycle is 9 header bytes then 7 (id, value) pairs
    CYCLE_LENGTH: int = 16
    HEADER_IDS: bytes = b"HMSDNYGTV"
    LASER_COUNT: int = 64
    PARTS_PER_LASER: int = 3
    RECORD_SIZE_BYTES: int = 21
    CYCLE_IDS: bytes = b"1234567"
    FIRST_CYCLE_IDS: bytes = b"12345\xf7\xf6"
    FIRST_CYCLE_VALUES: bytes = b"UNIT#"
    WARNING_CYCLE_IDS: bytes = b"W234567"
    SENSOR_STATE_IDS: tuple = (
        b"\xfe\xff\xfc\xfd\xfa\xfb\x37",
        b"1234567",
        b"\x31\x32\xf9\x34\xf8\x36\x37",
    )
    CYCLES_PER_SEQUENCE: int = 260


class StatusScaleConstants(Enum):
    ANGLE_SCALAR: float = 0.01  # 0.01 degrees
    LENGTH_SCALAR: float = 0.001  # mm
    FOCAL_SLOPE_SCALAR: float = 0.1
    YEAR_OFFSET: int = 2000


class GpsStatus(IntEnum):
    SYNC_NMEA = 0x41
    NMEA_ONLY = 0x56
    SYNC_ONLY = 0x50
    NOT_CONNECTED = 0x00


class StatusReturnType(IntEnum):
    STRONGEST = 0
    LAST = 1
    BOTH = 2


class PowerLevel(Enum):
    AUTO_NORMALIZED = "auto_normalized"
    AUTO_RAW = "auto_raw"
    MANUAL = "manual"


class PowerLevelCode(IntEnum):
    AUTO_NORMALIZED = 0xA8
    AUTO_RAW = 0xA0
    MANUAL_MARKER = 0x08  # low nibble of a manual setting, the level is the high nibble


class WarningFlag(IntFlag):
    LENS_CONTAMINATION = 0x01
    HOT = 0x02
    COLD = 0x04
    PPS = 0x20
    GPS_TIME = 0x40


assert dtype_laser_status.itemsize == StatusCycleConstants.RECORD_SIZE_BYTES.value
assert dtype_sensor_state.itemsize == StatusCycleConstants.RECORD_SIZE_BYTES.value
