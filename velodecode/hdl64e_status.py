# %%
import ipaddress
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from .errors import CalibrationError, DecodeError, StatusError
from .hdl64e_status_structure import (
    GpsStatus,
    PowerLevel,
    PowerLevelCode,
    StatusCycleConstants,
    StatusReturnType,
    StatusScaleConstants,
    WarningFlag,
    dtype_laser_status,
    dtype_sensor_state,
)
from .packet_data_structure import PacketConstants
from .parse_packet import Buffer, PacketFooter, parse_packet
from .read_calibration import CalibrationEntry, CalibrationTable
from .sensor_models import SensorModel, get_sensor_spec


@dataclass
class Hdl64eStatus:
    """Unit parameters an HDL-64E reports through the two footer status bytes."""

    datetime: Optional[np.datetime64] = None
    gps: GpsStatus = GpsStatus.NOT_CONNECTED
    temperature_celcius: int = 0
    firmware_version: int = 0  # major in the high nibble, minor in the low nibble

    lens_contamination: bool = False
    hot: bool = False
    cold: bool = False
    pps: bool = False
    gps_time: bool = False

    rpm: int = 0
    fov_start_deg: float = 0.0
    fov_end_deg: float = 0.0
    real_life_time_hours: int = 0
    ip_source: ipaddress.IPv4Address = ipaddress.IPv4Address(0)
    ip_dest: ipaddress.IPv4Address = ipaddress.IPv4Address(0)
    return_type: StatusReturnType = StatusReturnType.STRONGEST
    power_level: PowerLevel = PowerLevel.AUTO_NORMALIZED
    manual_power: Optional[int] = None  # 0 to 7, only for PowerLevel.MANUAL

    humidity: int = 0
    upper_threshold: int = 0
    lower_threshold: int = 0
    calibration_datetime: Optional[np.datetime64] = None

    @property
    def version(self) -> str:
        """Firmware version, e.g. 0x47 is '4.07'."""
        return f"{self.firmware_version >> 4}.{self.firmware_version & 0x0F:02d}"


class CycleStage(Enum):
    UNIT = "unit"
    LASERS = "lasers"
    CALIBRATION_DATETIME = "calibration_datetime"
    SENSOR_STATE = "sensor_state"


def status_datetime(year, month, day, hour, minute, second) -> np.datetime64:
    year = year + StatusScaleConstants.YEAR_OFFSET.value
    try:
        return np.datetime64(
            f"{year:04d}-{month:02d}-{day:02d}T{hour:02d}:{minute:02d}:{second:02d}", "s"
        )
    except ValueError:
        raise StatusError(
            f"Invalid status datetime {year}-{month}-{day} {hour}:{minute}:{second}"
        ) from None


def decode_power_level(code: int):
    if code == PowerLevelCode.AUTO_NORMALIZED:
        return PowerLevel.AUTO_NORMALIZED, None
    if code == PowerLevelCode.AUTO_RAW:
        return PowerLevel.AUTO_RAW, None
    level = (code & 0xF0) >> 4
    if code & 0x0F == PowerLevelCode.MANUAL_MARKER and level < 8:
        return PowerLevel.MANUAL, level
    raise StatusError(f"Invalid power level 0x{code:02X}")


class StatusAccumulator:
    """Rebuilds HDL-64E unit status and calibration from footer status bytes.

    Every packet carries one (id, value) pair. Sixteen pairs make a cycle: nine
    fixed header pairs (time, GPS, temperature, firmware) and seven pairs of
    payload. 260 consecutive cycles carry the thresholds, the calibration of all
    64 lasers, the calibration date and the unit parameters. The accumulator is
    initialized once the first complete sequence has been seen, about 4160
    packets. Out of order bytes reset the current cycle and the sequence starts
    over.
    """

    def __init__(self):
        self._status = Hdl64eStatus()
        self._initialized = False

        self._header = bytearray(len(StatusCycleConstants.HEADER_IDS.value))
        self._cycle_ids = bytearray(7)
        self._cycle_values = bytearray(7)
        self._cycle_pos = 0

        self._stage = CycleStage.UNIT
        self._laser = 0
        self._part = 0

        record_size = StatusCycleConstants.RECORD_SIZE_BYTES.value
        self._laser_bytes = np.zeros(
            (StatusCycleConstants.LASER_COUNT.value, record_size), dtype=np.uint8
        )
        self._sensor_state_bytes = np.zeros(record_size, dtype=np.uint8)
        self._laser_records: Optional[np.ndarray] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def status(self) -> Hdl64eStatus:
        """Snapshot of the latest status; fields stay at their defaults until reported."""
        return replace(self._status)

    def calibration_table(
        self, distance_resolution_m: float = PacketConstants.DISTANCE_SCALAR.value
    ) -> CalibrationTable:
        """Calibration stored in the sensor, less precise than its db.xml."""
        if self._laser_records is None:
            raise CalibrationError("No complete HDL-64E status sequence received yet")
        records = self._laser_records
        angle = StatusScaleConstants.ANGLE_SCALAR.value
        length = StatusScaleConstants.LENGTH_SCALAR.value
        entries = tuple(
            CalibrationEntry(
                vertical_angle_deg=float(record["vertical_correction"]) * angle,
                rotational_correction_deg=float(record["rotational_correction"]) * angle,
                distance_correction_m=float(record["distance_correction"]) * length,
                distance_correction_x_m=float(record["distance_correction_x"]) * length,
                distance_correction_y_m=float(record["distance_correction_y"]) * length,
                vertical_offset_m=float(record["vertical_offset"]) * length,
                horizontal_offset_m=float(record["horizontal_offset"]) * length,
                focal_distance_m=float(record["focal_distance"]) * length,
                focal_slope=float(record["focal_slope"])
                * StatusScaleConstants.FOCAL_SLOPE_SCALAR.value,
                min_intensity=int(record["min_intensity"]),
                max_intensity=int(record["max_intensity"]),
            )
            for record in records
        )
        return CalibrationTable(
            entries=entries,
            distance_resolution_m=distance_resolution_m,
            source="HDL-64E status bytes",
        )

    def feed_footer(self, footer: PacketFooter) -> None:
        self.feed(*footer.status_bytes)

    def feed(self, status_id: int, status_value: int) -> None:
        """Consume the status byte pair of one data packet."""
        header_ids = StatusCycleConstants.HEADER_IDS.value
        header_length = len(header_ids)
        header_pos = header_ids.find(bytes([status_id]))
        if header_pos >= 0:
            is_ok = header_pos == self._cycle_pos
        else:
            is_ok = header_length <= self._cycle_pos < StatusCycleConstants.CYCLE_LENGTH.value

        if not is_ok:
            self._log_reset("Wrong status cycle position detected, resetting")
            self._cycle_pos = 0
            return

        if self._cycle_pos < header_length:
            self._header[self._cycle_pos] = status_value
            if self._cycle_pos == header_length - 1:
                try:
                    self._update_header_status()
                except StatusError as err:
                    logging.warning(f"{err}")
                    self._reset_sequence()
            self._cycle_pos += 1
            return

        self._cycle_ids[self._cycle_pos - header_length] = status_id
        self._cycle_values[self._cycle_pos - header_length] = status_value

        if self._cycle_pos < StatusCycleConstants.CYCLE_LENGTH.value - 1:
            self._cycle_pos += 1
            return

        self._cycle_pos = 0
        try:
            is_in_order = self._consume_cycle(bytes(self._cycle_ids), bytes(self._cycle_values))
        except StatusError as err:
            logging.warning(f"{err}")
            self._reset_sequence()
            return
        if not is_in_order:
            self._log_reset(f"Unexpected status cycle in stage {self._stage.value}, resetting")
            self._reset_sequence()

    def _log_reset(self, msg: str) -> None:
        # before initialization the stream is joined mid sequence, so this is expected
        if self._initialized:
            logging.warning(msg)
        else:
            logging.debug(msg)

    def _reset_sequence(self) -> None:
        self._stage = CycleStage.UNIT
        self._laser = 0
        self._part = 0

    def _update_header_status(self) -> None:
        hour, minute, second, day, month, year, gps, temperature, version = self._header
        self._status.datetime = status_datetime(year, month, day, hour, minute, second)
        try:
            self._status.gps = GpsStatus(gps)
        except ValueError:
            raise StatusError(f"Unknown GPS status code 0x{gps:02X}") from None
        self._status.temperature_celcius = temperature
        self._status.firmware_version = version

    def _consume_cycle(self, ids: bytes, values: bytes) -> bool:
        """Advance the sequence by one cycle, False when the cycle is out of order."""
        if self._stage == CycleStage.UNIT:
            if ids != StatusCycleConstants.FIRST_CYCLE_IDS.value:
                return False
            if values[:5] != StatusCycleConstants.FIRST_CYCLE_VALUES.value:
                return False
            self._status.upper_threshold = values[5]
            self._status.lower_threshold = values[6]
            self._stage = CycleStage.LASERS
            self._laser = 0
            self._part = 0
            return True

        if self._stage == CycleStage.LASERS:
            if self._part < StatusCycleConstants.PARTS_PER_LASER.value:
                if ids != StatusCycleConstants.CYCLE_IDS.value:
                    return False
                if self._part == 0 and values[0] != self._laser:
                    return False
                start = 7 * self._part
                self._laser_bytes[self._laser, start : start + 7] = np.frombuffer(
                    values, dtype=np.uint8
                )
                is_last_laser = self._laser == StatusCycleConstants.LASER_COUNT.value - 1
                if is_last_laser and self._part == StatusCycleConstants.PARTS_PER_LASER.value - 1:
                    # the last laser has no warning cycle
                    self._stage = CycleStage.CALIBRATION_DATETIME
                else:
                    self._part += 1
                return True
            if ids != StatusCycleConstants.WARNING_CYCLE_IDS.value:
                return False
            self._update_warnings(WarningFlag(values[0]))
            self._laser += 1
            self._part = 0
            return True

        if self._stage == CycleStage.CALIBRATION_DATETIME:
            if ids != StatusCycleConstants.CYCLE_IDS.value:
                return False
            year, month, day, hour, minute, second, humidity = values
            self._status.calibration_datetime = status_datetime(
                year, month, day, hour, minute, second
            )
            self._status.humidity = humidity
            self._stage = CycleStage.SENSOR_STATE
            self._part = 0
            return True

        if ids != StatusCycleConstants.SENSOR_STATE_IDS.value[self._part]:
            return False
        start = 7 * self._part
        self._sensor_state_bytes[start : start + 7] = np.frombuffer(values, dtype=np.uint8)
        if self._part < len(StatusCycleConstants.SENSOR_STATE_IDS.value) - 1:
            self._part += 1
            return True
        self._process_full_sequence()
        self._reset_sequence()
        return True

    def _update_warnings(self, flags: WarningFlag) -> None:
        self._status.lens_contamination = bool(flags & WarningFlag.LENS_CONTAMINATION)
        self._status.hot = bool(flags & WarningFlag.HOT)
        self._status.cold = bool(flags & WarningFlag.COLD)
        self._status.pps = bool(flags & WarningFlag.PPS)
        self._status.gps_time = bool(flags & WarningFlag.GPS_TIME)

    def _process_full_sequence(self) -> None:
        state = np.frombuffer(self._sensor_state_bytes.tobytes(), dtype=dtype_sensor_state)[0]
        try:
            return_type = StatusReturnType(int(state["return_type"]))
        except ValueError:
            raise StatusError(f"Invalid return type {int(state['return_type'])}") from None
        power_level, manual_power = decode_power_level(int(state["power_level"]))

        angle = StatusScaleConstants.ANGLE_SCALAR.value
        self._status.rpm = int(state["rpm"])
        self._status.fov_start_deg = int(state["fov_start"]) * angle
        self._status.fov_end_deg = int(state["fov_end"]) * angle
        self._status.real_life_time_hours = int(state["real_life_time"])
        self._status.ip_source = ipaddress.IPv4Address(state["ip_source"].tobytes())
        self._status.ip_dest = ipaddress.IPv4Address(state["ip_dest"].tobytes())
        self._status.return_type = return_type
        self._status.power_level = power_level
        self._status.manual_power = manual_power

        self._laser_records = np.frombuffer(self._laser_bytes.tobytes(), dtype=dtype_laser_status)
        if not self._initialized:
            logging.info("HDL-64E status initialization complete")
            self._initialized = True
        logging.debug(f"HDL-64E status sequence complete, {self._status.rpm} rpm")


def accumulate_status(
    packets: Iterable[Buffer], accumulator: Optional[StatusAccumulator] = None
) -> StatusAccumulator:
    """Feed the status bytes of HDL-64E data packets into an accumulator.

    Packets that fail to parse are skipped, which drops their status byte and
    restarts the cycle they were part of.
    """
    spec = get_sensor_spec(SensorModel.HDL64E)
    if accumulator is None:
        accumulator = StatusAccumulator()
    for packet_ind, packet in enumerate(packets):
        try:
            footer = parse_packet(packet, spec).footer
        except DecodeError as err:
            logging.debug(f"Skipping packet {packet_ind}: {err}")
            continue
        accumulator.feed_footer(footer)
    return accumulator
