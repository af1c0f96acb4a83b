from .decoder import Decoder, decode_packets_parallel, iter_turns
from .errors import (
    CalibrationError,
    DecodeError,
    InvalidChannel,
    MalformedPacket,
    StatusError,
    UnrecognizedBlockFlag,
    UnrecognizedReturnMode,
    UnsupportedModel,
    VelodecodeError,
)
from .firing_timing import FiringTimingModel
from .hdl64e_status import Hdl64eStatus, StatusAccumulator, accumulate_status
from .lidar_time import resolve_top_of_hour
from .packet_data_structure import BlockFlag, ReturnMode, ReturnType, dtype_point_record
from .parse_packet import DataBlock, PacketFooter, ParsedPacket, parse_packet
from .read_calibration import CalibrationEntry, CalibrationTable, read_calibration
from .return_mode import ReturnModeResolver
from .sensor_models import SensorModel, SensorSpec, get_sensor_spec
from .synthesize_points import PointRecord, records_to_array
