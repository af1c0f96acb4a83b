# %%
import logging
from pathlib import Path
from typing import Iterator, Optional, Union

import numpy as np
from pytars.readers.pcap.pcap_filters import PcapPacketFilters
from pytars.readers.pcap.pcap_reader import PcapReader

from .decoder import Decoder
from .errors import DecodeError
from .hdl64e_status import StatusAccumulator, accumulate_status
from .read_calibration import read_calibration
from .sensor_models import SensorModel, get_sensor_spec

DATA_PORT = 2368


def iter_pcap_packets(
    pcap_file, pcap_filters: Optional[PcapPacketFilters] = None, packet_size: int = 1206
) -> Iterator[bytes]:
    """Yield the udp payload of every lidar data packet in a pcap file."""
    # unless the user specifically requests a different destination port, use the default
    pcap_filters = PcapPacketFilters() if pcap_filters is None else pcap_filters.copy()
    if pcap_filters.destination_port is None:
        pcap_filters.destination_port = DATA_PORT
    pcap_filters.udp_payload_length_gate = [packet_size, packet_size]

    with PcapReader(pcap_file, packet_filters=pcap_filters) as pcap:
        logging.debug(f"Reading lidar data packets: {str(pcap_file)}")
        for packet in pcap:
            yield bytes(packet.udp_data.data)


def read_pcap_points(
    pcap_file,
    sensor_model: Union[SensorModel, str],
    pcap_filters: Optional[PcapPacketFilters] = None,
    calibration_file: Optional[Union[Path, str]] = None,
    extrinsic_4x4_to_transformed_from_sensor: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Decode every data packet in a pcap into one structured point array.

    Packets that fail to decode are logged and skipped. With an extrinsic the
    x, y, z columns are transformed out of the sensor frame.
    """
    spec = get_sensor_spec(sensor_model)
    calibration = (
        None if calibration_file is None else read_calibration(calibration_file, spec.model)
    )
    decoder = Decoder(spec.model, calibration=calibration)

    all_points = []
    num_skipped = 0
    for packet in iter_pcap_packets(pcap_file, pcap_filters, spec.packet_size):
        try:
            all_points.append(decoder.decode_array(packet))
        except DecodeError as err:
            num_skipped += 1
            logging.debug(f"Skipping packet: {err}")

    if num_skipped:
        logging.warning(f"Skipped {num_skipped} packets that failed to decode")
    if len(all_points) == 0:
        raise ValueError("No data found in pcap file")

    points = np.concatenate(all_points)
    if extrinsic_4x4_to_transformed_from_sensor is not None:
        points = transform_points(points, extrinsic_4x4_to_transformed_from_sensor)
    return points


def transform_points(points: np.ndarray, extrinsic_4x4: np.ndarray) -> np.ndarray:
    extrinsic_4x4 = np.asarray(extrinsic_4x4, dtype=np.float64).reshape(4, 4)
    xyz1 = np.stack([points["x"], points["y"], points["z"], np.ones(len(points))], axis=0)
    transformed = extrinsic_4x4 @ xyz1
    out = points.copy()
    out["x"], out["y"], out["z"] = transformed[0], transformed[1], transformed[2]
    return out


def read_pcap_hdl64e_status(
    pcap_file, pcap_filters: Optional[PcapPacketFilters] = None
) -> StatusAccumulator:
    """Accumulate the unit status carried in the data packets of an HDL-64E pcap."""
    spec = get_sensor_spec(SensorModel.HDL64E)
    accumulator = accumulate_status(iter_pcap_packets(pcap_file, pcap_filters, spec.packet_size))
    if not accumulator.is_initialized:
        logging.warning("No complete HDL-64E status sequence found in pcap file")
    return accumulator
