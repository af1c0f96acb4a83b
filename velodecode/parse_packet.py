# %%
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from .errors import MalformedPacket, UnrecognizedBlockFlag
from .packet_data_structure import BlockFlag, ReturnMode, dtype_data_packet
from .return_mode import ReturnModeResolver
from .sensor_models import SensorSpec

Buffer = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class DataBlock:
    flag: int
    azimuth: int  # centi-degrees
    distances: np.ndarray  # raw, distance_resolution_m units
    reflectivities: np.ndarray

    @property
    def bank(self) -> int:
        return 0 if self.flag == BlockFlag.UPPER_BANK else 1


@dataclass(frozen=True)
class PacketFooter:
    timestamp_us: int  # microseconds past the hour
    return_mode: ReturnMode
    product_id: int
    status_bytes: Tuple[int, int]


@dataclass(frozen=True)
class ParsedPacket:
    blocks: Tuple[DataBlock, ...]
    footer: PacketFooter

    @property
    def flags(self) -> np.ndarray:
        return np.array([block.flag for block in self.blocks], dtype=np.uint16)

    @property
    def azimuths(self) -> np.ndarray:
        return np.array([block.azimuth for block in self.blocks], dtype=np.int64)

    @property
    def distances(self) -> np.ndarray:
        return np.stack([block.distances for block in self.blocks])

    @property
    def reflectivities(self) -> np.ndarray:
        return np.stack([block.reflectivities for block in self.blocks])


def parse_packet(buffer: Buffer, spec: SensorSpec) -> ParsedPacket:
    """Split a raw data packet into blocks and footer without converting units.

    Raises MalformedPacket, UnrecognizedBlockFlag or UnrecognizedReturnMode.
    """
    if len(buffer) != spec.packet_size:
        raise MalformedPacket(
            f"{spec.name} packets are {spec.packet_size} bytes, got {len(buffer)}"
        )
    if spec.blocks_per_packet != dtype_data_packet["blocks"].shape[0]:
        raise MalformedPacket(f"{spec.name} expects {spec.blocks_per_packet} blocks per packet")

    data = np.frombuffer(buffer, dtype=dtype_data_packet, count=1)[0]

    flags = data["blocks"]["flag"]
    is_known_flag = np.isin(flags, [BlockFlag.UPPER_BANK.value, BlockFlag.LOWER_BANK.value])
    if not np.all(is_known_flag):
        block_index = int(np.argmin(is_known_flag))
        raise UnrecognizedBlockFlag(block_index, int(flags[block_index]))

    resolver = ReturnModeResolver(spec)
    raw_return_mode = int(data["return_mode"])
    product_id = int(data["product_id"])
    if spec.footer_has_return_mode:
        return_mode = resolver.resolve(raw_return_mode)
    else:
        return_mode = resolver.infer(data["blocks"]["azimuth"], flags)
    footer = PacketFooter(
        timestamp_us=int(data["timestamp"]),
        return_mode=return_mode,
        product_id=product_id,
        status_bytes=(raw_return_mode, product_id),
    )

    # copy so the parsed blocks never alias the caller's buffer
    samples = data["blocks"]["samples"]
    distances = samples["distance"].astype(np.uint16)
    reflectivities = samples["reflectivity"].astype(np.uint8)
    distances.setflags(write=False)
    reflectivities.setflags(write=False)
    blocks = tuple(
        DataBlock(
            flag=int(flags[i]),
            azimuth=int(data["blocks"]["azimuth"][i]),
            distances=distances[i],
            reflectivities=reflectivities[i],
        )
        for i in range(spec.blocks_per_packet)
    )
    return ParsedPacket(blocks=blocks, footer=footer)
