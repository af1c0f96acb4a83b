# %%
from typing import Dict, Tuple, Union

import numpy as np

from .errors import InvalidChannel
from .packet_data_structure import PacketConstants, ReturnMode
from .return_mode import ReturnModeResolver
from .sensor_models import SensorSpec

MAX_RETURNS = 2


class FiringTimingModel:
    """Time offsets of every sample in a packet relative to the packet timestamp.

    ``offsets_for(mode)[block_position, slot, return_index]`` where
    ``block_position`` is the block's index in the packet, ``slot`` the sample
    position within the block and ``return_index`` 0 for the first reported
    echo. Blocks captured by one firing (both banks of the HDL-64E, both returns
    of a dual return packet) belong to the same firing group and share offsets,
    so the table depends on the return mode.
    """

    def __init__(self, spec: SensorSpec):
        self.spec = spec
        self.resolver = ReturnModeResolver(spec)
        slot = np.arange(spec.samples_per_block)
        sequence = slot // spec.channels_per_sequence
        position = slot % spec.channels_per_sequence

        # packet slot order is the firing order on every supported model
        self.slot_offsets_us = (
            sequence * spec.sequence_duration_us + position * spec.channel_interval_us
        )
        self.firing_fraction_per_slot = self.slot_offsets_us / spec.block_duration_us
        self.slot_offsets_us.setflags(write=False)
        self.firing_fraction_per_slot.setflags(write=False)

        self._offsets_by_mode: Dict[ReturnMode, np.ndarray] = {
            mode: self._build_offsets(mode) for mode in ReturnMode
        }

    @classmethod
    def for_model(cls, spec: SensorSpec) -> "FiringTimingModel":
        return cls(spec)

    def _build_offsets(self, mode: ReturnMode) -> np.ndarray:
        group_offsets_us = self.firing_group(mode) * self.spec.block_duration_us
        return_offsets_us = np.arange(MAX_RETURNS) * self.spec.inter_return_delay_us
        offsets_us = (
            group_offsets_us[:, None, None]
            + self.slot_offsets_us[None, :, None]
            + return_offsets_us[None, None, :]
        )
        offsets_us.setflags(write=False)
        return offsets_us

    @property
    def block_duration_us(self) -> float:
        return self.spec.block_duration_us

    @property
    def offsets_us(self) -> np.ndarray:
        """Offset table of single return packets."""
        return self._offsets_by_mode[ReturnMode.STRONGEST]

    def offsets_for(self, mode: Union[ReturnMode, int]) -> np.ndarray:
        return self._offsets_by_mode[ReturnMode(mode)]

    def firing_group(self, mode: Union[ReturnMode, int]) -> np.ndarray:
        """Firing group of every block position in the packet."""
        blocks_per_group = self.resolver.blocks_per_group(ReturnMode(mode))
        return np.arange(self.spec.blocks_per_packet) // blocks_per_group

    def _slot(self, channel_index: int, sequence: int) -> int:
        if not 0 <= channel_index < self.spec.channel_count:
            raise InvalidChannel(channel_index, self.spec.channel_count)
        if not 0 <= sequence < self.spec.sequences_per_block:
            raise ValueError(
                f"sequence must be in [0, {self.spec.sequences_per_block}), got {sequence}"
            )
        position = channel_index % self.spec.channels_per_sequence
        return sequence * self.spec.channels_per_sequence + position

    def offset_us(
        self,
        block_position: int,
        channel_index: int,
        return_index: int = 0,
        sequence: int = 0,
        mode: Union[ReturnMode, int] = ReturnMode.STRONGEST,
    ) -> float:
        if not 0 <= block_position < self.spec.blocks_per_packet:
            raise ValueError(
                f"block_position must be in [0, {self.spec.blocks_per_packet}), "
                f"got {block_position}"
            )
        if not 0 <= return_index < MAX_RETURNS:
            raise ValueError(f"return_index must be 0 or 1, got {return_index}")
        slot = self._slot(channel_index, sequence)
        return float(self.offsets_for(mode)[block_position, slot, return_index])

    def firing_fraction(self, channel_index: int, sequence: int = 0) -> float:
        """Fraction of a firing group's time elapsed when the channel fires."""
        return float(self.firing_fraction_per_slot[self._slot(channel_index, sequence)])

    def firing_order(self, bank: int = 0) -> Tuple[int, ...]:
        if not 0 <= bank < self.spec.banks:
            raise ValueError(f"bank must be in [0, {self.spec.banks}), got {bank}")
        offset = bank * PacketConstants.BANK_CHANNEL_OFFSET.value
        return tuple(range(offset, offset + self.spec.channels_per_sequence))

    def slot_channels(self, bank: int) -> np.ndarray:
        """Channel index of every slot in a block of the given bank."""
        position = np.arange(self.spec.samples_per_block) % self.spec.channels_per_sequence
        return bank * PacketConstants.BANK_CHANNEL_OFFSET.value + position
