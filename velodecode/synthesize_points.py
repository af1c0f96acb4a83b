# %%
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import numpy as np

from .firing_timing import FiringTimingModel
from .packet_data_structure import (
    BlockFlag,
    PacketConstants,
    ReturnType,
    dtype_point_record,
)
from .parse_packet import ParsedPacket
from .read_calibration import CalibrationTable
from .return_mode import ReturnModeResolver


class DistanceCorrectionConstants(Enum):
    # two point near range calibration, beyond the crossover the far correction applies
    CROSSOVER_DISTANCE_M: float = 25.0
    FAR_POINT_M: float = 25.04
    NEAR_POINT_X_M: float = 2.40
    NEAR_POINT_Y_M: float = 1.93


class IntensityConstants(Enum):
    FOCAL_DISTANCE_SCALE_M: float = 131.0
    MAX_RAW_DISTANCE: float = 65535.0
    FOCAL_SLOPE_SCALE: float = 256.0


@dataclass(frozen=True)
class PointRecord:
    x: float
    y: float
    z: float
    distance: float
    intensity: int
    reflectivity: int
    channel: int
    azimuth: float
    timestamp: float  # microseconds past the hour
    return_index: int
    num_returns: int
    return_type: ReturnType
    block: int

    @property
    def xyz(self):
        return (self.x, self.y, self.z)


def calc_block_azimuth_delta(leader_azimuth: np.ndarray) -> np.ndarray:
    """Azimuth swept by each firing group, in centi-degrees.

    The last group of a packet can't look ahead to the next packet, so it reuses
    the previous delta.
    """
    delta = np.zeros(len(leader_azimuth), dtype=np.float64)
    if len(leader_azimuth) > 1:
        delta[:-1] = np.diff(leader_azimuth) % PacketConstants.AZIMUTH_FULL_TURN.value
        delta[-1] = delta[-2]
    return delta


def calc_corrected_xyz(
    distance_m: np.ndarray, azimuth_deg: np.ndarray, channel: np.ndarray, columns
):
    """Project ranges to sensor frame Cartesian coordinates.

    Applies distance, rotational, vertical and lever arm corrections. Returns
    x, y, z and the corrected distance.
    """
    dist_corr = columns["distance_correction_m"][channel]
    dist_corr_x = columns["distance_correction_x_m"][channel]
    dist_corr_y = columns["distance_correction_y_m"][channel]
    vert_sin = columns["vertical_sin"][channel]
    vert_cos = columns["vertical_cos"][channel]
    vert_offset = columns["vertical_offset_m"][channel]
    horiz_offset = columns["horizontal_offset_m"][channel]

    corrected_distance = distance_m + dist_corr
    rotation_rad = np.radians(azimuth_deg - columns["rotational_correction_deg"][channel])
    rot_sin = np.sin(rotation_rad)
    rot_cos = np.cos(rotation_rad)

    xy_distance = corrected_distance * vert_cos - vert_offset * vert_sin
    xx = np.abs(xy_distance * rot_sin - horiz_offset * rot_cos)
    yy = np.abs(xy_distance * rot_cos + horiz_offset * rot_sin)

    far = DistanceCorrectionConstants.FAR_POINT_M.value
    near_x = DistanceCorrectionConstants.NEAR_POINT_X_M.value
    near_y = DistanceCorrectionConstants.NEAR_POINT_Y_M.value
    is_near = corrected_distance <= DistanceCorrectionConstants.CROSSOVER_DISTANCE_M.value
    dist_corr_x = np.where(
        is_near,
        (dist_corr - dist_corr_x) * (xx - near_x) / (far - near_x) + dist_corr_x,
        dist_corr,
    )
    dist_corr_y = np.where(
        is_near,
        (dist_corr - dist_corr_y) * (yy - near_y) / (far - near_y) + dist_corr_y,
        dist_corr,
    )

    xy_distance_x = (distance_m + dist_corr_x) * vert_cos - vert_offset * vert_sin
    xy_distance_y = (distance_m + dist_corr_y) * vert_cos - vert_offset * vert_sin
    x = xy_distance_x * rot_sin - horiz_offset * rot_cos
    y = xy_distance_y * rot_cos + horiz_offset * rot_sin
    z = corrected_distance * vert_sin + vert_offset * vert_cos
    return x, y, z, corrected_distance


def calc_intensity(
    reflectivity: np.ndarray, raw_distance: np.ndarray, channel: np.ndarray, columns
) -> np.ndarray:
    """Calibrated intensity.

    The channel's min_intensity is removed from the raw reflectivity and the
    focal distance compensation added, then the result is clamped to
    ``[0, max_intensity]``. With the default calibration (no focal slope,
    intensity limits 0 and 255) this is the raw reflectivity.
    """
    focal_slope = columns["focal_slope"][channel]
    t1 = 1.0 - columns["focal_distance_m"][channel] / (
        IntensityConstants.FOCAL_DISTANCE_SCALE_M.value
    )
    t2 = 1.0 - raw_distance / IntensityConstants.MAX_RAW_DISTANCE.value
    intensity = np.maximum(
        reflectivity.astype(np.float64) - columns["min_intensity"][channel], 0.0
    ) + IntensityConstants.FOCAL_SLOPE_SCALE.value * focal_slope * np.abs(t1 * t1 - t2 * t2)
    max_intensity = np.minimum(columns["max_intensity"][channel], 255)
    return np.clip(intensity, 0, max_intensity).astype(np.uint8)


def synthesize_points(
    parsed: ParsedPacket,
    calibration: CalibrationTable,
    timing: FiringTimingModel,
    resolver: ReturnModeResolver,
) -> np.ndarray:
    """Turn a parsed packet into a structured array of points.

    Rows are ordered by firing group, then firing order within the group, then
    return index, so azimuth and time never step backwards within a packet.
    Raises InvalidChannel when a block flag maps samples outside the calibration.
    """
    mode = parsed.footer.return_mode
    members = np.array(resolver.group_members(mode))
    num_blocks = len(parsed.blocks)
    num_groups = num_blocks // len(members)

    # (groups, members) block index in emission order
    group = np.arange(num_groups)
    block_index = group[:, None] * resolver.blocks_per_group(mode) + members[None, :]

    banks = (parsed.flags == BlockFlag.LOWER_BANK.value).astype(np.int64)
    channel_per_block = timing.slot_channels(banks[:, None])
    calibration.check_channels(channel_per_block)

    # gather (groups, slots, members)
    def gather(per_block: np.ndarray) -> np.ndarray:
        return per_block[block_index].transpose(0, 2, 1)

    raw_distance = gather(parsed.distances)
    reflectivity = gather(parsed.reflectivities)
    channel = gather(channel_per_block)
    selection = resolver.select(mode, raw_distance)

    # interpolate azimuth across the firing sequence
    azimuth = parsed.azimuths.astype(np.float64)
    delta = calc_block_azimuth_delta(azimuth[group * resolver.blocks_per_group(mode)])
    azimuth_centideg = (
        azimuth[block_index][:, None, :]
        + timing.firing_fraction_per_slot[None, :, None] * delta[:, None, None]
    )
    azimuth_deg = (azimuth_centideg * PacketConstants.AZIMUTH_SCALAR.value) % 360.0

    slot = np.arange(raw_distance.shape[1])
    offset_us = timing.offsets_for(mode)[
        block_index[:, None, :], slot[None, :, None], selection.return_index.astype(np.int64) - 1
    ]
    timestamp = parsed.footer.timestamp_us + offset_us

    keep = selection.keep
    channel = channel[keep]
    raw_distance = raw_distance[keep].astype(np.float64)
    azimuth_deg = azimuth_deg[keep]
    columns = calibration.columns

    x, y, z, distance = calc_corrected_xyz(
        raw_distance * calibration.distance_resolution_m, azimuth_deg, channel, columns
    )

    points = np.empty(int(np.count_nonzero(keep)), dtype=dtype_point_record)
    points["x"] = x
    points["y"] = y
    points["z"] = z
    points["distance"] = distance
    points["intensity"] = calc_intensity(reflectivity[keep], raw_distance, channel, columns)
    points["reflectivity"] = reflectivity[keep]
    points["channel"] = channel
    points["azimuth"] = azimuth_deg
    points["timestamp"] = timestamp[keep]
    points["return_index"] = selection.return_index[keep]
    points["num_returns"] = selection.num_returns[keep]
    points["return_type"] = selection.return_type[keep]
    points["block"] = np.broadcast_to(block_index[:, None, :], keep.shape)[keep]
    return points


def iter_point_records(points: np.ndarray) -> Iterator[PointRecord]:
    for row in points:
        yield PointRecord(
            x=float(row["x"]),
            y=float(row["y"]),
            z=float(row["z"]),
            distance=float(row["distance"]),
            intensity=int(row["intensity"]),
            reflectivity=int(row["reflectivity"]),
            channel=int(row["channel"]),
            azimuth=float(row["azimuth"]),
            timestamp=float(row["timestamp"]),
            return_index=int(row["return_index"]),
            num_returns=int(row["num_returns"]),
            return_type=ReturnType(int(row["return_type"])),
            block=int(row["block"]),
        )


def records_to_array(records) -> np.ndarray:
    records = list(records)
    points = np.empty(len(records), dtype=dtype_point_record)
    for name in dtype_point_record.names:
        points[name] = [getattr(record, name) for record in records]
    return points
