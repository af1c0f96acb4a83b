# %%
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, fields
from functools import cached_property
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import yaml
from pydantic import BaseModel, ValidationError, model_validator

from .errors import CalibrationError, InvalidChannel
from .packet_data_structure import PacketConstants
from .sensor_models import SensorModel, get_sensor_spec

CM_TO_M = 0.01


@dataclass(frozen=True)
class CalibrationEntry:
    """Geometric and intensity corrections for one laser channel.

    Angles are in degrees, lengths in meters.
    """

    vertical_angle_deg: float
    rotational_correction_deg: float = 0.0
    distance_correction_m: float = 0.0
    distance_correction_x_m: float = 0.0
    distance_correction_y_m: float = 0.0
    vertical_offset_m: float = 0.0
    horizontal_offset_m: float = 0.0
    focal_distance_m: float = 0.0
    focal_slope: float = 0.0
    min_intensity: int = 0
    max_intensity: int = 255


@dataclass(frozen=True)
class CalibrationTable:
    entries: Tuple[CalibrationEntry, ...]
    distance_resolution_m: float = PacketConstants.DISTANCE_SCALAR.value
    source: str = ""

    def __post_init__(self):
        if len(self.entries) == 0:
            raise CalibrationError("Calibration table has no entries")
        if self.distance_resolution_m <= 0:
            raise CalibrationError("distance_resolution_m must be positive")

    @classmethod
    def for_model(cls, sensor_model: Union[SensorModel, str]) -> "CalibrationTable":
        """Load the bundled nominal calibration for a sensor model."""
        spec = get_sensor_spec(sensor_model)
        return read_calibration(default_calibration_path(spec.model))

    @property
    def channel_count(self) -> int:
        return len(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def entry_for(self, channel_index: int) -> CalibrationEntry:
        if not 0 <= channel_index < len(self.entries):
            raise InvalidChannel(channel_index, len(self.entries))
        return self.entries[channel_index]

    def check_channels(self, channel_index: np.ndarray) -> None:
        """Raise InvalidChannel for the first index outside the table."""
        bad = (channel_index < 0) | (channel_index >= len(self.entries))
        if np.any(bad):
            raise InvalidChannel(int(channel_index[bad][0]), len(self.entries))

    @cached_property
    def columns(self) -> Dict[str, np.ndarray]:
        """Read-only per-channel arrays of every entry field plus sin/cos terms."""
        columns = {
            f.name: np.array([getattr(e, f.name) for e in self.entries], dtype=np.float64)
            for f in fields(CalibrationEntry)
        }
        vertical_rad = np.radians(columns["vertical_angle_deg"])
        columns["vertical_sin"] = np.sin(vertical_rad)
        columns["vertical_cos"] = np.cos(vertical_rad)
        for value in columns.values():
            value.setflags(write=False)
        return columns


def default_calibration_path(sensor_model: SensorModel) -> Path:
    return (
        Path(__file__).parent
        / "calibration"
        / f"{sensor_model.name.lower()}_default_calibration.csv"
    )


def read_calibration(
    file_name: Optional[Union[Path, str]] = None,
    sensor_model: Union[SensorModel, str] = SensorModel.HDL32E,
) -> CalibrationTable:
    if file_name is None:
        return read_calibration_csv(default_calibration_path(get_sensor_spec(sensor_model).model))
    suffix = Path(file_name).suffix.lower()
    if suffix == ".csv":
        return read_calibration_csv(file_name)
    elif suffix == ".xml":
        return read_calibration_xml(file_name)
    elif suffix in (".yaml", ".yml"):
        return read_calibration_yaml(file_name)
    else:
        raise NotImplementedError("Only csv, xml and yaml calibration files are supported")


def _check_laser_ids(laser_id: List[int], file_name) -> None:
    if laser_id != list(range(len(laser_id))):
        raise CalibrationError(
            f"Laser ID must be unique from 0-{len(laser_id) - 1} in order: {file_name}"
        )


def read_calibration_csv(file_name: Union[Path, str]) -> CalibrationTable:
    """Reads a per-laser calibration csv with a header row.

    Columns are named after the CalibrationEntry fields. The older
    ``laser_id, azimuth_offset_deg, elevation_offset_deg`` layout is accepted too.
    """
    with open(file_name, "r") as f:
        lines = [line.strip() for line in f.readlines() if line.strip()]
    if len(lines) < 2:
        raise CalibrationError(f"No calibration rows in {file_name}")

    header = [name.strip() for name in lines[0].split(",")]
    if "laser_id" not in header:
        raise CalibrationError(f"Calibration csv has no laser_id column: {file_name}")
    try:
        rows = [dict(zip(header, [float(x) for x in line.split(",")])) for line in lines[1:]]
    except ValueError as err:
        raise CalibrationError(f"Non numeric value in {file_name}: {err}") from err

    _check_laser_ids([int(row["laser_id"]) for row in rows], file_name)

    entries = []
    for row in rows:
        # the azimuth offset is added to the motor angle, a rotational correction subtracted
        if "azimuth_offset_deg" in row:
            row["rotational_correction_deg"] = -row.pop("azimuth_offset_deg")
        if "elevation_offset_deg" in row:
            row["vertical_angle_deg"] = row.pop("elevation_offset_deg")
        if "vertical_angle_deg" not in row:
            raise CalibrationError(f"Calibration csv has no vertical angle: {file_name}")
        entries.append(_entry_from_mapping(row))

    logging.debug(f"Read {len(entries)} laser calibrations from {file_name}")
    return CalibrationTable(entries=tuple(entries), source=str(file_name))


def _entry_from_mapping(row: Dict[str, float]) -> CalibrationEntry:
    distance_correction_m = row.get("distance_correction_m", 0.0)
    return CalibrationEntry(
        vertical_angle_deg=row["vertical_angle_deg"],
        rotational_correction_deg=row.get("rotational_correction_deg", 0.0),
        distance_correction_m=distance_correction_m,
        distance_correction_x_m=row.get("distance_correction_x_m", distance_correction_m),
        distance_correction_y_m=row.get("distance_correction_y_m", distance_correction_m),
        vertical_offset_m=row.get("vertical_offset_m", 0.0),
        horizontal_offset_m=row.get("horizontal_offset_m", 0.0),
        focal_distance_m=row.get("focal_distance_m", 0.0),
        focal_slope=row.get("focal_slope", 0.0),
        min_intensity=int(row.get("min_intensity", 0)),
        max_intensity=int(row.get("max_intensity", 255)),
    )


# %% Velodyne db.xml, lengths in centimeters
def _xml_items(db: ET.Element, tag: str) -> List[ET.Element]:
    node = db.find(tag)
    if node is None:
        return []
    return node.findall("item")


def _xml_float(px: ET.Element, tag: str, default: Optional[float] = None) -> float:
    node = px.find(tag)
    if node is None or node.text is None:
        if default is None:
            raise CalibrationError(f"Missing {tag} in calibration point")
        return default
    return float(node.text)


def read_calibration_xml(file_name: Union[Path, str]) -> CalibrationTable:
    """Reads a Velodyne db.xml calibration file."""
    try:
        root = ET.parse(file_name).getroot()
    except ET.ParseError as err:
        raise CalibrationError(f"Can't parse calibration xml {file_name}: {err}") from err
    db = root if root.tag == "DB" else root.find(".//DB")
    if db is None:
        raise CalibrationError(f"No DB node in {file_name}")

    dist_lsb = db.find("distLSB_")
    distance_resolution_m = (
        float(dist_lsb.text) * CM_TO_M
        if dist_lsb is not None
        else PacketConstants.DISTANCE_SCALAR.value
    )

    points = [item.find("px") for item in _xml_items(db, "points_")]
    if not points or any(px is None for px in points):
        raise CalibrationError(f"No laser points in {file_name}")
    laser_id = [int(_xml_float(px, "id_")) for px in points]
    _check_laser_ids(laser_id, file_name)

    min_intensity = [int(x.text) for x in _xml_items(db, "minIntensity_")]
    max_intensity = [int(x.text) for x in _xml_items(db, "maxIntensity_")]
    if not min_intensity:
        min_intensity = [0] * len(points)
    if not max_intensity:
        max_intensity = [255] * len(points)
    if len(min_intensity) < len(points) or len(max_intensity) < len(points):
        raise CalibrationError(f"Intensity limits don't cover every laser: {file_name}")

    entries = []
    for i, px in enumerate(points):
        distance_correction = _xml_float(px, "distCorrection_", 0.0)
        entries.append(
            CalibrationEntry(
                vertical_angle_deg=_xml_float(px, "vertCorrection_"),
                rotational_correction_deg=_xml_float(px, "rotCorrection_", 0.0),
                distance_correction_m=distance_correction * CM_TO_M,
                distance_correction_x_m=_xml_float(px, "distCorrectionX_", distance_correction)
                * CM_TO_M,
                distance_correction_y_m=_xml_float(px, "distCorrectionY_", distance_correction)
                * CM_TO_M,
                vertical_offset_m=_xml_float(px, "vertOffsetCorrection_", 0.0) * CM_TO_M,
                horizontal_offset_m=_xml_float(px, "horizOffsetCorrection_", 0.0) * CM_TO_M,
                focal_distance_m=_xml_float(px, "focalDistance_", 0.0) * CM_TO_M,
                focal_slope=_xml_float(px, "focalSlope_", 0.0),
                min_intensity=min_intensity[i],
                max_intensity=max_intensity[i],
            )
        )

    logging.debug(f"Read {len(entries)} laser calibrations from {file_name}")
    return CalibrationTable(
        entries=tuple(entries),
        distance_resolution_m=distance_resolution_m,
        source=str(file_name),
    )


# %% ROS style yaml, angles in radians and lengths in meters
class LaserCalibrationConfig(BaseModel):
    laser_id: int
    rot_correction: float = 0.0
    vert_correction: float
    dist_correction: float = 0.0
    dist_correction_x: Optional[float] = None
    dist_correction_y: Optional[float] = None
    vert_offset_correction: float = 0.0
    horiz_offset_correction: float = 0.0
    focal_distance: float = 0.0
    focal_slope: float = 0.0
    min_intensity: int = 0
    max_intensity: int = 255


class CalibrationFileConfig(BaseModel):
    lasers: List[LaserCalibrationConfig]
    num_lasers: Optional[int] = None
    distance_resolution: float = PacketConstants.DISTANCE_SCALAR.value

    @model_validator(mode="after")
    def _check_count(self) -> "CalibrationFileConfig":
        if self.num_lasers is not None and self.num_lasers != len(self.lasers):
            raise ValueError(f"num_lasers is {self.num_lasers} but {len(self.lasers)} listed")
        return self


def read_calibration_yaml(file_name: Union[Path, str]) -> CalibrationTable:
    with open(file_name, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise CalibrationError("Calibration root must be a mapping.")
    try:
        cfg = CalibrationFileConfig.model_validate(data)
    except ValidationError as err:
        raise CalibrationError(f"Invalid calibration {file_name}: {err}") from err

    lasers = sorted(cfg.lasers, key=lambda laser: laser.laser_id)
    _check_laser_ids([laser.laser_id for laser in lasers], file_name)

    entries = []
    for laser in lasers:
        entries.append(
            CalibrationEntry(
                vertical_angle_deg=float(np.degrees(laser.vert_correction)),
                rotational_correction_deg=float(np.degrees(laser.rot_correction)),
                distance_correction_m=laser.dist_correction,
                distance_correction_x_m=(
                    laser.dist_correction
                    if laser.dist_correction_x is None
                    else laser.dist_correction_x
                ),
                distance_correction_y_m=(
                    laser.dist_correction
                    if laser.dist_correction_y is None
                    else laser.dist_correction_y
                ),
                vertical_offset_m=laser.vert_offset_correction,
                horizontal_offset_m=laser.horiz_offset_correction,
                focal_distance_m=laser.focal_distance,
                focal_slope=laser.focal_slope,
                min_intensity=laser.min_intensity,
                max_intensity=laser.max_intensity,
            )
        )

    logging.debug(f"Read {len(entries)} laser calibrations from {file_name}")
    return CalibrationTable(
        entries=tuple(entries),
        distance_resolution_m=cfg.distance_resolution,
        source=str(file_name),
    )
