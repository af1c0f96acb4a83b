# %%
import logging
import os
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Deque, Iterable, Iterator, Optional, Tuple, Union

import numpy as np

from .errors import CalibrationError, DecodeError
from .firing_timing import FiringTimingModel
from .packet_data_structure import PacketConstants
from .parse_packet import Buffer, ParsedPacket, parse_packet
from .read_calibration import CalibrationTable
from .return_mode import ReturnModeResolver
from .sensor_models import SensorModel, get_sensor_spec
from .synthesize_points import PointRecord, iter_point_records, synthesize_points


class Decoder:
    """Decodes raw data packets of one sensor model into calibrated points.

    Holds only immutable state, so one decoder can be shared between threads.
    """

    def __init__(
        self,
        sensor_model: Union[SensorModel, str],
        calibration: Optional[CalibrationTable] = None,
    ):
        self.spec = get_sensor_spec(sensor_model)
        if calibration is None:
            calibration = CalibrationTable.for_model(self.spec.model)
        if calibration.channel_count != self.spec.channel_count:
            raise CalibrationError(
                f"{self.spec.name} has {self.spec.channel_count} channels, "
                f"calibration has {calibration.channel_count}"
            )
        self.calibration = calibration
        self.timing = FiringTimingModel.for_model(self.spec)
        self.resolver = ReturnModeResolver(self.spec)
        logging.debug(f"{self.spec.name} decoder using calibration {calibration.source}")

    @property
    def sensor_model(self) -> SensorModel:
        return self.spec.model

    def parse(self, buffer: Buffer) -> ParsedPacket:
        parsed = parse_packet(buffer, self.spec)
        product_id = parsed.footer.product_id
        if self.spec.product_id is not None and product_id != self.spec.product_id:
            logging.debug(
                f"Product id 0x{product_id:02X} does not match {self.spec.name} "
                f"(0x{self.spec.product_id:02X})"
            )
        return parsed

    def _decode(self, buffer: Buffer) -> Tuple[ParsedPacket, np.ndarray]:
        parsed = self.parse(buffer)
        points = synthesize_points(parsed, self.calibration, self.timing, self.resolver)
        return parsed, points

    def decode_array(self, buffer: Buffer) -> np.ndarray:
        """Decode one packet into a structured array of dtype_point_record."""
        return self._decode(buffer)[1]

    def decode(self, buffer: Buffer) -> Iterator[PointRecord]:
        """Decode one packet.

        Validation happens immediately, so a DecodeError is raised by this call.
        The returned iterator yields PointRecords lazily, in firing order.
        """
        return iter_point_records(self.decode_array(buffer))

    def decode_stream(
        self, packets: Iterable[Buffer], skip_errors: bool = True
    ) -> Iterator[PointRecord]:
        """Decode a sequence of packets, optionally skipping the ones that fail."""
        for packet_ind, packet in enumerate(packets):
            try:
                points = self.decode_array(packet)
            except DecodeError as err:
                if not skip_errors:
                    raise
                logging.warning(f"Skipping packet {packet_ind}: {err}")
                continue
            yield from iter_point_records(points)


def _crosses_split(previous: int, current: int, split: int) -> bool:
    if previous > current:
        # wrapped around 360 degrees between the packets
        return not (previous >= split > current)
    return current >= split > previous


def iter_turns(
    decoder: Decoder,
    packets: Iterable[Buffer],
    split_azimuth_deg: float = 0.0,
    skip_errors: bool = True,
    include_partial: bool = False,
) -> Iterator[np.ndarray]:
    """Group decoded points into full sensor rotations.

    A turn ends with the packet whose leading azimuth crosses
    ``split_azimuth_deg``. The trailing incomplete turn is only yielded when
    ``include_partial`` is set.
    """
    full_turn = PacketConstants.AZIMUTH_FULL_TURN.value
    split = int(round(split_azimuth_deg / PacketConstants.AZIMUTH_SCALAR.value)) % full_turn
    previous_azimuth = None
    turn = []
    for packet_ind, packet in enumerate(packets):
        try:
            parsed, points = decoder._decode(packet)
        except DecodeError as err:
            if not skip_errors:
                raise
            logging.warning(f"Skipping packet {packet_ind}: {err}")
            continue
        turn.append(points)
        azimuth = parsed.blocks[0].azimuth % full_turn
        is_split = previous_azimuth is not None and _crosses_split(
            previous_azimuth, azimuth, split
        )
        previous_azimuth = azimuth
        if is_split:
            yield np.concatenate(turn)
            turn = []
    if include_partial and turn:
        yield np.concatenate(turn)


def decode_packets_parallel(
    decoder: Decoder, packets: Iterable[Buffer], max_workers: Optional[int] = None
) -> Iterator[Tuple[int, Union[np.ndarray, DecodeError]]]:
    """Decode packets on a thread pool.

    Yields ``(sequence_number, result)`` in input order, where result is either
    the point array or the DecodeError raised for that packet. At most
    ``2 * max_workers`` packets are in flight, so a lazy source is only read as
    fast as results are consumed.
    """
    if max_workers is None:
        max_workers = min(32, (os.cpu_count() or 1) + 4)
    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")

    def decode_one(packet: Buffer) -> Union[np.ndarray, DecodeError]:
        try:
            return decoder.decode_array(packet)
        except DecodeError as err:
            return err

    max_in_flight = 2 * max_workers
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        in_flight: Deque[Tuple[int, Future]] = deque()
        for sequence_number, packet in enumerate(packets):
            if len(in_flight) == max_in_flight:
                done_number, future = in_flight.popleft()
                yield done_number, future.result()
            in_flight.append((sequence_number, executor.submit(decode_one, packet)))
        while in_flight:
            done_number, future = in_flight.popleft()
            yield done_number, future.result()
