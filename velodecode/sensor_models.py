# %%
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from .errors import UnsupportedModel
from .packet_data_structure import PacketConstants, ProductId


class SensorModel(Enum):
    """Supported spinning sensors, valued by their marketing name."""

    VLP16 = "VLP-16"
    VLP16_HIRES = "Puck Hi-Res"
    HDL32E = "HDL-32E"
    HDL64E = "HDL-64E"


@dataclass(frozen=True)
class SensorSpec:
    """Fixed packet layout and firing constants of one sensor model.

    A data block always carries ``samples_per_block`` samples. They are split into
    ``sequences_per_block`` firing sequences of ``channels_per_sequence`` channels.
    """

    model: SensorModel
    channel_count: int
    channels_per_sequence: int
    sequences_per_block: int
    banks: int
    product_id: Optional[int]
    supports_dual_return: bool
    footer_has_return_mode: bool
    distance_resolution_m: float
    channel_interval_us: float
    sequence_duration_us: float
    block_duration_us: float
    inter_return_delay_us: float = 0.0
    blocks_per_packet: int = PacketConstants.BLOCKS_PER_PACKET.value
    samples_per_block: int = PacketConstants.SAMPLES_PER_BLOCK.value
    packet_size: int = PacketConstants.PACKET_SIZE_BYTES.value

    @property
    def name(self) -> str:
        return self.model.value


SENSOR_SPECS: Dict[SensorModel, SensorSpec] = {
    SensorModel.VLP16: SensorSpec(
        model=SensorModel.VLP16,
        channel_count=16,
        channels_per_sequence=16,
        sequences_per_block=2,
        banks=1,
        product_id=ProductId.VLP16.value,
        supports_dual_return=True,
        footer_has_return_mode=True,
        distance_resolution_m=PacketConstants.DISTANCE_SCALAR.value,
        channel_interval_us=2.304,
        sequence_duration_us=55.296,
        block_duration_us=110.592,
    ),
    SensorModel.VLP16_HIRES: SensorSpec(
        model=SensorModel.VLP16_HIRES,
        channel_count=16,
        channels_per_sequence=16,
        sequences_per_block=2,
        banks=1,
        product_id=ProductId.VLP16_HIRES.value,
        supports_dual_return=True,
        footer_has_return_mode=True,
        distance_resolution_m=PacketConstants.DISTANCE_SCALAR.value,
        channel_interval_us=2.304,
        sequence_duration_us=55.296,
        block_duration_us=110.592,
    ),
    SensorModel.HDL32E: SensorSpec(
        model=SensorModel.HDL32E,
        channel_count=32,
        channels_per_sequence=32,
        sequences_per_block=1,
        banks=1,
        product_id=ProductId.HDL32E.value,
        supports_dual_return=True,
        footer_has_return_mode=True,
        distance_resolution_m=PacketConstants.DISTANCE_SCALAR.value,
        channel_interval_us=1.152,
        sequence_duration_us=46.08,
        block_duration_us=46.08,
    ),
    # upper and lower banks fire together; the footer carries status bytes, so the
    # return mode is read from the block layout
    SensorModel.HDL64E: SensorSpec(
        model=SensorModel.HDL64E,
        channel_count=64,
        channels_per_sequence=32,
        sequences_per_block=1,
        banks=2,
        product_id=None,
        supports_dual_return=True,
        footer_has_return_mode=False,
        distance_resolution_m=PacketConstants.DISTANCE_SCALAR.value,
        channel_interval_us=1.5,
        sequence_duration_us=48.0,
        block_duration_us=48.0,
    ),
}


def _normalize(name: str) -> str:
    return "".join(c for c in name.lower() if c.isalnum())


def get_sensor_spec(sensor_model: Union[SensorModel, str]) -> SensorSpec:
    """Look up the SensorSpec of a model given as enum, enum name or marketing name."""
    if isinstance(sensor_model, SensorModel):
        model = sensor_model
    elif isinstance(sensor_model, str):
        key = _normalize(sensor_model)
        matches = [
            m for m in SensorModel if key in (_normalize(m.name), _normalize(m.value))
        ]
        if not matches:
            raise UnsupportedModel(f"Unsupported sensor model: {sensor_model!r}")
        model = matches[0]
    else:
        raise UnsupportedModel(f"Unsupported sensor model: {sensor_model!r}")

    if model not in SENSOR_SPECS:
        raise UnsupportedModel(f"Unsupported sensor model: {model}")
    logging.debug(f"Using sensor spec for {model.value}")
    return SENSOR_SPECS[model]
