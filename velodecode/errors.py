"""Exceptions raised by the decoder.

Per-packet errors derive from ``DecodeError``. They abort decoding of the
offending packet only; the decoder keeps no state between packets.
"""


class VelodecodeError(Exception):
    """Base class for every error raised by velodecode."""


class UnsupportedModel(VelodecodeError, ValueError):
    """The sensor model identifier is not one of the supported models."""


class CalibrationError(VelodecodeError, ValueError):
    """A calibration source is malformed or does not fit the sensor model."""


class DecodeError(VelodecodeError, ValueError):
    """Decoding a single packet failed."""


class MalformedPacket(DecodeError):
    """The buffer length does not match the sensor model's packet size."""


class UnrecognizedBlockFlag(DecodeError):
    """A data block flag is neither the upper nor the lower bank identifier."""

    def __init__(self, block_index: int, flag: int):
        super().__init__(f"Block {block_index} has unrecognized flag 0x{flag:04X}")
        self.block_index = block_index
        self.flag = flag


class UnrecognizedReturnMode(DecodeError):
    """The footer return mode byte is unknown or unsupported by the model."""

    def __init__(self, value: int, reason: str = "unrecognized return mode"):
        super().__init__(f"{reason}: 0x{value:02X}")
        self.value = value


class InvalidChannel(DecodeError, IndexError):
    """A channel index is outside the calibration table."""

    def __init__(self, channel: int, channel_count: int):
        super().__init__(f"Channel {channel} is out of range [0, {channel_count})")
        self.channel = channel
        self.channel_count = channel_count


class StatusError(VelodecodeError, ValueError):
    """An HDL-64E status cycle holds a value outside its documented range."""
