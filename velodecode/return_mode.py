# %%
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .errors import UnrecognizedReturnMode
from .packet_data_structure import BlockFlag, ReturnMode, ReturnType
from .sensor_models import SensorSpec


@dataclass(frozen=True)
class ReturnSelection:
    """Per-sample return bookkeeping, all shaped (groups, slots, members)."""

    keep: np.ndarray
    return_index: np.ndarray
    num_returns: np.ndarray
    return_type: np.ndarray


class ReturnModeResolver:
    """Maps the footer return mode onto block grouping and emitted returns.

    In dual return mode the bank blocks of one firing are repeated: the first
    copy holds the last return and the second the strongest (or second
    strongest) return. On single bank sensors that makes the even block last and
    the odd block strongest. When both report the same raw distance the echo is
    emitted once, tagged LAST_AND_STRONGEST.
    """

    def __init__(self, spec: SensorSpec):
        self.spec = spec

    def resolve(self, value: int) -> ReturnMode:
        if not self.spec.footer_has_return_mode:
            # the footer holds status bytes, the block layout tells the mode instead
            return ReturnMode.STRONGEST
        try:
            mode = ReturnMode(value)
        except ValueError:
            raise UnrecognizedReturnMode(value) from None
        if mode == ReturnMode.DUAL and not self.spec.supports_dual_return:
            raise UnrecognizedReturnMode(
                value, f"{self.spec.name} does not support dual return mode"
            )
        return mode

    def infer(self, azimuths: np.ndarray, flags: np.ndarray) -> ReturnMode:
        """Return mode of a packet whose footer does not report it.

        A dual return firing repeats the whole bank sequence at the same azimuth,
        e.g. upper, lower, upper, lower on the HDL-64E.
        """
        if not self.spec.supports_dual_return:
            return ReturnMode.STRONGEST
        group = self.blocks_per_group(ReturnMode.DUAL)
        azimuths = np.asarray(azimuths)
        flags = np.asarray(flags)
        if len(azimuths) % group != 0:
            return ReturnMode.STRONGEST
        bank_flags = [BlockFlag.UPPER_BANK.value, BlockFlag.LOWER_BANK.value][: self.spec.banks]
        azimuths = azimuths.reshape(-1, group)
        is_dual = np.all(azimuths == azimuths[:, :1]) and np.all(
            flags.reshape(-1, group) == np.tile(bank_flags, 2)
        )
        return ReturnMode.DUAL if is_dual else ReturnMode.STRONGEST

    def returns_per_firing(self, mode: ReturnMode) -> int:
        return 2 if mode == ReturnMode.DUAL else 1

    def blocks_per_group(self, mode: ReturnMode) -> int:
        return self.spec.banks * self.returns_per_firing(mode)

    def group_members(self, mode: ReturnMode) -> Tuple[int, ...]:
        """Block offsets within a group, in emission order.

        A dual group holds the last return of every bank followed by the
        strongest return of every bank. Each bank's strongest block is reported
        before its last block.
        """
        banks = self.spec.banks
        if mode == ReturnMode.DUAL:
            return tuple(
                offset for bank in range(banks) for offset in (banks + bank, bank)
            )
        return tuple(range(banks))

    def select(self, mode: ReturnMode, distances: np.ndarray) -> ReturnSelection:
        """Decide which samples become points.

        ``distances`` is shaped (groups, slots, members) with members ordered as
        ``group_members``. Zero distances are never kept.
        """
        shape = distances.shape
        if mode != ReturnMode.DUAL:
            return_type = ReturnType.LAST if mode == ReturnMode.LAST else ReturnType.STRONGEST
            return ReturnSelection(
                keep=distances != 0,
                return_index=np.ones(shape, dtype=np.uint8),
                num_returns=np.ones(shape, dtype=np.uint8),
                return_type=np.full(shape, return_type.value, dtype=np.uint8),
            )

        # (..., banks, [strongest, last])
        pairs = distances.reshape(shape[:-1] + (-1, 2))
        strongest = pairs[..., 0]
        last = pairs[..., 1]
        is_collapsed = (strongest == last) & (last != 0)
        keep_last = last != 0
        keep_strongest = (strongest != 0) & ~is_collapsed
        num_returns = keep_last.astype(np.uint8) + keep_strongest.astype(np.uint8)

        return_index = np.stack(
            [
                np.ones_like(num_returns),
                1 + keep_strongest.astype(np.uint8),
            ],
            axis=-1,
        )
        last_type = np.where(
            is_collapsed, ReturnType.LAST_AND_STRONGEST.value, ReturnType.LAST.value
        )
        return_type = np.stack(
            [np.full_like(last_type, ReturnType.STRONGEST.value), last_type], axis=-1
        ).astype(np.uint8)

        return ReturnSelection(
            keep=np.stack([keep_strongest, keep_last], axis=-1).reshape(shape),
            return_index=return_index.reshape(shape),
            num_returns=np.stack([num_returns, num_returns], axis=-1).reshape(shape),
            return_type=return_type.reshape(shape),
        )
