# %%
from enum import Enum, IntEnum

import numpy as np

# Per channel/transceiver data type
dtype_point = np.dtype(
    [
        ("distance", "<u2"),
        ("reflectivity", "u1"),
    ]
)


# firing data
dtype_block = np.dtype(
    [
        ("flag", "<u2"),
        ("azimuth", "<u2"),
        ("samples", (dtype_point, 32)),
    ]
)

# data packet, 12 blocks of 100 bytes plus the 6 byte footer
dtype_data_packet = np.dtype(
    [
        ("blocks", dtype_block, 12),
        ("timestamp", "<u4"),
        ("return_mode", "u1"),
        ("product_id", "u1"),
    ]
)


# decoded points, one row per PointRecord
dtype_point_record = np.dtype(
    [
        ("x", np.float64),
        ("y", np.float64),
        ("z", np.float64),
        ("distance", np.float64),
        ("intensity", np.uint8),
        ("reflectivity", np.uint8),
        ("channel", np.uint16),
        ("azimuth", np.float64),
        ("timestamp", np.float64),
        ("return_index", np.uint8),
        ("num_returns", np.uint8),
        ("return_type", np.uint8),
        ("block", np.uint8),
    ]
)


class PacketConstants(Enum):
    AZIMUTH_SCALAR: float = 0.01  # 0.01 degrees
    DISTANCE_SCALAR: float = 0.002  # 2 mm
    AZIMUTH_FULL_TURN: int = 36000
    BLOCKS_PER_PACKET: int = 12
    SAMPLES_PER_BLOCK: int = 32
    BLOCK_SIZE_BYTES: int = 100
    FOOTER_SIZE_BYTES: int = 6
    PACKET_SIZE_BYTES: int = 1206
    BANK_CHANNEL_OFFSET: int = 32  # lower bank lasers are 32-63


class BlockFlag(IntEnum):
    """Block flags as read little-endian; bytes FF EE and FF DD on the wire."""

    UPPER_BANK = 0xEEFF
    LOWER_BANK = 0xDDFF


class ReturnMode(IntEnum):
    """The return mode byte indicates how the packet's blocks are organized."""

    STRONGEST = 0x37
    LAST = 0x38
    DUAL = 0x39


class ReturnType(IntEnum):
    """Which echo of a laser pulse a point represents."""

    STRONGEST = 1
    LAST = 2
    LAST_AND_STRONGEST = 3


class ProductId(IntEnum):
    HDL32E = 0x21
    VLP16 = 0x22
    VLP16_HIRES = 0x24


assert dtype_block.itemsize == PacketConstants.BLOCK_SIZE_BYTES.value
assert dtype_data_packet.itemsize == PacketConstants.PACKET_SIZE_BYTES.value
