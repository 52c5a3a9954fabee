"""Typed exceptions for the UART SMS Gateway."""


class GatewayError(Exception):
    """Base exception for the gateway."""


class FrameError(GatewayError):
    """A line could not be turned into a device message."""


class NotFramedError(FrameError):
    """Line carries no SMS_START/SMS_END envelope (firmware chatter)."""


class FrameParseError(FrameError):
    """Envelope found but the JSON payload is missing or malformed."""


class MissingTypeError(FrameError):
    """Valid JSON payload without a 'type' discriminator."""


class FrameEncodeError(FrameError):
    """Command could not be serialized to JSON."""


class SerialLinkError(GatewayError):
    """Base for serial connection failures."""


class PortListError(SerialLinkError):
    """Enumerating serial ports failed."""


class NoPortsError(SerialLinkError):
    """No serial ports present."""


class PortOpenError(SerialLinkError):
    """Opening a serial port failed."""


class AutoDetectError(SerialLinkError):
    """No candidate port answered the probe command."""


class LinkLostError(SerialLinkError):
    """Open connection ended (EOF or read error)."""


class NotConnectedError(SerialLinkError):
    """No serial port is currently open."""


class WriteError(SerialLinkError):
    """Writing to the serial port failed."""


class StoreError(GatewayError):
    """Persisting or loading records failed."""


class NotifyError(GatewayError):
    """Delivering a notification failed."""

    def __init__(self, channel: str, detail: str = "") -> None:
        self.channel = channel
        super().__init__(f"{channel}: {detail}")
