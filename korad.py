#!/usr/bin/env python3
"""
KORAD KD3005P Power Supply, Python API

Line-based ASCII protocol over a USB serial port: every command is terminated
by a single newline, queries (ending in ``?``) answer with one line, setters
answer with nothing and need a short settle delay before the next command.

Requires: pyserial (`pip install pyserial`)
"""

import logging
import math
import os
import sys
import time
from typing import Callable, NamedTuple, Optional

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_PORT = "/dev/ttyACM0"
DEFAULT_BAUD = 9600

# The device never acknowledges a setter; 50 ms is what it needs before it
# reliably accepts the next command.
SETTLE_DELAY = 0.05

# Identity signature (reply to *IDN?)
EXPECTED_MANUFACTURER = "KORAD"
EXPECTED_MODEL = "KD3005P"
EXPECTED_FIRMWARE = "V6.6"
SERIAL_PREFIX = "SN:"

# Queries
CMD_IDENTIFY = "*IDN?"
CMD_STATUS = "STATUS?"
CMD_VSET_QUERY = "VSET1?"
CMD_ISET_QUERY = "ISET1?"
CMD_VOUT_QUERY = "VOUT1?"
CMD_IOUT_QUERY = "IOUT1?"

# Status register bits
STATUS_CV = 0x01
STATUS_OCP = 0x20  # undocumented by KORAD, inferred from observation
STATUS_OUTPUT = 0x40

ENV_DEVICE = "KORAD_DEVICE"
ENV_BAUD = "KORAD_BAUD"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class KoradError(Exception):
    """Base class for everything raised by this module."""


class DeviceUnavailable(KoradError):
    """The serial device could not be opened."""

    def __init__(self, path: str, reason: object):
        self.path = path
        super().__init__(f"{path}: {reason}")


class IoFailure(KoradError):
    """Reading from or writing to the device failed."""


class ProtocolViolation(IoFailure):
    """The device closed the channel or sent a malformed reply."""


class TimerFailure(IoFailure):
    """The settle delay could not be carried out."""


class UnrecognizedDevice(KoradError):
    """The identity reply does not match a KD3005P."""

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"device identified as '{identity}'. Unknown, aborting.")


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
def delay(seconds: float):
    """Block for at least ``seconds``.

    ``time.sleep`` already resumes after signal interruptions, so only a
    timer that cannot be armed at all is reported.
    """
    if not math.isfinite(seconds) or seconds < 0:
        raise TimerFailure(f"invalid delay: {seconds!r}")
    try:
        time.sleep(seconds)
    except (OSError, OverflowError) as exc:
        raise TimerFailure(f"sleep failed: {exc}") from exc


class SerialTransport:
    """Raw newline-delimited byte channel on top of ``serial.Serial``."""

    def __init__(self, ser: serial.Serial):
        self._ser = ser

    @classmethod
    def open(cls, path: str, baud: int = DEFAULT_BAUD,
             timeout: Optional[float] = None) -> "SerialTransport":
        """Open ``path`` in raw read/write mode.

        With the default ``timeout=None`` reads block until a full line
        arrives.
        """
        try:
            ser = serial.Serial(
                path, baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=timeout,
            )
        except (serial.SerialException, OSError) as exc:
            raise DeviceUnavailable(path, exc) from exc
        logger.debug("opened %s at %d baud", path, baud)
        return cls(ser)

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def write_line(self, data: bytes):
        try:
            self._ser.write(data + b"\n")
            self._ser.flush()
        except (serial.SerialException, OSError) as exc:
            raise IoFailure(f"write failed: {exc}") from exc

    def read_line(self) -> bytes:
        """Read one line and strip its terminator.

        A read that returns nothing at all means the channel was closed or
        timed out, which this client never recovers from.
        """
        try:
            line = self._ser.readline()
        except (serial.SerialException, OSError) as exc:
            raise IoFailure(f"read failed: {exc}") from exc
        if not line:
            raise ProtocolViolation("no data received")
        return line.rstrip(b"\n")

    def close(self):
        if self.is_open:
            self._ser.close()
        self._ser = None


# ---------------------------------------------------------------------------
# Identity / status helpers
# ---------------------------------------------------------------------------
class Identity(NamedTuple):
    manufacturer: str
    model: str
    firmware: str
    serial: str


def parse_identity(raw: str, strict: bool = True) -> Identity:
    """Split a ``*IDN?`` reply into its four space-separated tokens.

    With ``strict=False`` a reply of any shape is accepted: missing tokens
    are left empty and extra tokens are dropped.

    Raises:
        UnrecognizedDevice: If ``strict`` and the reply does not hold exactly
            four tokens.
    """
    tokens = raw.split(" ")
    if len(tokens) != 4:
        if strict:
            raise UnrecognizedDevice(raw)
        tokens = (tokens + [""] * 4)[:4]
    return Identity(*tokens)


def check_identity(identity: Identity) -> bool:
    """Return True if ``identity`` is the KD3005P this client speaks to."""
    return (
        identity.manufacturer == EXPECTED_MANUFACTURER
        and identity.model == EXPECTED_MODEL
        and identity.firmware == EXPECTED_FIRMWARE
        and identity.serial.startswith(SERIAL_PREFIX)
    )


def decode_status(status: int) -> dict:
    """Decode the ``STATUS?`` byte.

    Only bits 0, 5 and 6 carry meaning; the raw value is kept so reserved
    bits can still be displayed. The OCP bit is not in the vendor
    documentation, treat it as best effort.
    """
    return {
        "status": status,
        "mode": "CV" if status & STATUS_CV else "CC",
        "ocp_on": bool(status & STATUS_OCP),
        "output_on": bool(status & STATUS_OUTPUT),
    }


# ANSI escapes for terminal output
CSI = "\x1b["
RED = CSI + "91m"
GREEN = CSI + "92m"
MAGENTA = CSI + "95m"
CYAN = CSI + "96m"
RESET = CSI + "0m"


def format_status(state: dict, color: bool = False) -> str:
    """Render a :meth:`KD3005P.read_status` result as a single line."""
    if color:
        on, off = GREEN + "on" + RESET, RED + "off" + RESET
        ufmt, ifmt, reset = MAGENTA, CYAN, RESET
    else:
        on, off = "on", "off"
        ufmt = ifmt = reset = ""

    cv_mode = state["mode"] == "CV"
    return (
        f"constant {ufmt if cv_mode else ifmt}"
        f"{'voltage' if cv_mode else 'current'}{reset} mode, "
        f"ocp {on if state['ocp_on'] else off}, "
        f"output {on if state['output_on'] else off} "
        f"(0x{state['status']:02x})"
        f", set to {ufmt}{state['voltage_setpoint']}{reset}V"
        f" / {ifmt}{state['current_setpoint']}{reset}A"
        f", actual output: {ufmt}{state['output_voltage']}{reset}V"
        f" / {ifmt}{state['output_current']}{reset}A"
    )


# ---------------------------------------------------------------------------
# KD3005P class
# ---------------------------------------------------------------------------
class KD3005P:
    """Python API for the KORAD KD3005P programmable power supply.

    Usage::

        with KD3005P("/dev/ttyACM0") as psu:
            psu.identify()
            psu.apply_settings(voltage="5.00", current="0.500", output="1")
            print(psu.read_status())
    """

    def __init__(self, port: str = DEFAULT_PORT, baud: int = DEFAULT_BAUD,
                 settle_delay: float = SETTLE_DELAY,
                 timeout: Optional[float] = None):
        self._port = port
        self._baud = baud
        self._timeout = timeout
        self.settle_delay = settle_delay
        self._transport: Optional[SerialTransport] = None
        self._identity: Optional[Identity] = None

    # -- Properties ----------------------------------------------------------

    @property
    def port(self) -> str:
        return self._port

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the serial port. Does not talk to the device yet."""
        self._transport = SerialTransport.open(
            self._port, self._baud, timeout=self._timeout
        )
        self._identity = None

    def close(self):
        """Close the port, leaving the device in its current state."""
        if self._transport is not None:
            self._transport.close()
            logger.debug("closed %s", self._port)
        self._transport = None
        self._identity = None

    def _require_transport(self) -> SerialTransport:
        if self._transport is None:
            raise KoradError(f"{self._port} is not open")
        return self._transport

    # -- Low-level I/O -------------------------------------------------------

    def query_raw(self, cmd: str) -> bytes:
        """Send a query and return the reply line without its terminator."""
        transport = self._require_transport()
        logger.debug("> %s", cmd)
        transport.write_line(cmd.encode("ascii"))
        reply = transport.read_line()
        logger.debug("< %r", reply)
        return reply

    def query(self, cmd: str) -> str:
        """Send a query and return the reply decoded as text."""
        return self.query_raw(cmd).decode("latin-1")

    def apply(self, cmd: str):
        """Send a setter and wait the settle delay. Nothing is read back."""
        transport = self._require_transport()
        logger.debug("> %s", cmd)
        transport.write_line(cmd.encode("ascii"))
        delay(self.settle_delay)

    # -- Identity ------------------------------------------------------------

    def identify(self, force: bool = False,
                 echo: Optional[Callable[[str], None]] = None) -> Identity:
        """Query ``*IDN?`` and validate the reply.

        Args:
            force: Skip signature validation (the query and tokenizing still
                happen).
            echo: Called with the raw reply before validation, so callers can
                show what is actually connected even when it is rejected.

        Raises:
            UnrecognizedDevice: If the reply is not the KD3005P signature.
        """
        raw = self.query(CMD_IDENTIFY)
        if echo is not None:
            echo(raw)

        identity = parse_identity(raw, strict=not force)
        if check_identity(identity):
            logger.info("device identified as %s", raw)
        elif force:
            logger.warning("unknown device '%s', continuing anyway", raw)
        else:
            raise UnrecognizedDevice(raw)

        self._identity = identity
        return identity

    def _require_identity(self):
        if self._identity is None:
            raise KoradError("identity handshake required before sending commands")

    # -- Settings ------------------------------------------------------------

    def set_current(self, amps):
        """Set the current limit, e.g. ``"1.000"``."""
        self._require_identity()
        self.apply(f"ISET1:{amps}")

    def set_voltage(self, volts):
        """Set the voltage, e.g. ``"12.00"``."""
        self._require_identity()
        self.apply(f"VSET1:{volts}")

    def set_output(self, state):
        """Turn the output off (``0``) or on (``1``)."""
        self._require_identity()
        self.apply(f"OUT{state}")

    def set_ocp(self, state):
        """Turn over-current protection off (``0``) or on (``1``)."""
        self._require_identity()
        self.apply(f"OCP{state}")

    def save(self, slot):
        """Store the current U/I settings in memory slot 1-5."""
        self._require_identity()
        self.apply(f"SAV{slot}")

    def recall(self, slot):
        """Restore U/I settings from memory slot 1-5."""
        self._require_identity()
        self.apply(f"RCL{slot}")

    def apply_settings(self, current=None, voltage=None, output=None,
                       ocp=None, save=None, recall=None) -> list[str]:
        """Send every given setting, always in the same order.

        Order is current, voltage, output, OCP, save, recall. Values are not
        validated; the device ignores what it does not understand.

        Returns:
            The commands that were sent.
        """
        self._require_identity()
        steps = [
            ("ISET1:", current),
            ("VSET1:", voltage),
            ("OUT", output),
            ("OCP", ocp),
            ("SAV", save),
            ("RCL", recall),
        ]
        sent = []
        for prefix, value in steps:
            if value is None:
                continue
            cmd = f"{prefix}{value}"
            self.apply(cmd)
            sent.append(cmd)
        return sent

    # -- Status --------------------------------------------------------------

    def read_status(self) -> dict:
        """Read the status byte plus setpoints and measured output.

        Returns a dict with ``status``, ``mode`` (``"CV"``/``"CC"``),
        ``ocp_on``, ``output_on`` and the four numeric strings
        ``voltage_setpoint``, ``current_setpoint``, ``output_voltage``,
        ``output_current`` exactly as the device sent them.
        """
        reply = self.query_raw(CMD_STATUS)
        if len(reply) != 1:
            raise ProtocolViolation(
                f"expected a single status byte, got {len(reply)}: {reply!r}"
            )
        state = decode_status(reply[0])
        state["voltage_setpoint"] = self.query(CMD_VSET_QUERY)
        state["current_setpoint"] = self.query(CMD_ISET_QUERY)
        state["output_voltage"] = self.query(CMD_VOUT_QUERY)
        state["output_current"] = self.query(CMD_IOUT_QUERY)
        return state


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def setup_logging(debug: bool = False):
    """Configure logging."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _build_parser():
    import argparse

    class _Parser(argparse.ArgumentParser):
        # usage errors exit with 1, I/O errors own exit code 2
        def error(self, message):
            self.print_usage(sys.stderr)
            self.exit(1, f"{self.prog}: error: {message}\n")

    parser = _Parser(
        prog="korad",
        description="KORAD KD3005P command-line interface",
        epilog="Without any setting the device is only identified.",
    )
    parser.add_argument(
        "-D", "--device",
        default=os.environ.get(ENV_DEVICE, DEFAULT_PORT),
        help=f"serial device path (default: %(default)s, env {ENV_DEVICE})",
    )
    parser.add_argument(
        "-b", "--baud", type=int,
        default=os.environ.get(ENV_BAUD, DEFAULT_BAUD),
        help=f"baud rate (default: %(default)s, env {ENV_BAUD})",
    )
    parser.add_argument("-f", "--force", action="store_true",
                        help="use the device even if the version does not match")
    parser.add_argument("-s", "--status", action="store_true",
                        help="print status")
    parser.add_argument("-v", "--version", action="store_true",
                        help="print version information")
    parser.add_argument("--debug", action="store_true",
                        help="log protocol traffic to stderr")
    parser.add_argument("-I", "--current", metavar="x.xxx",
                        help="set maximum output current in Ampere")
    parser.add_argument("-U", "--voltage", metavar="xx.xx",
                        help="set maximum output voltage in Volt")
    parser.add_argument("-o", "--output", metavar="{0|1}",
                        help="turn output off or on")
    parser.add_argument("-O", "--ocp", metavar="{0|1}",
                        help="turn over-current protection off or on")
    parser.add_argument("-S", "--save", metavar="{1-5}",
                        help="store current U/I settings in memory slot")
    parser.add_argument("-R", "--recall", metavar="{1-5}",
                        help="restore U/I settings from memory slot")
    return parser


def _print_identity(raw: str):
    print(f"device identified as: {raw}", flush=True)


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.debug)

    psu = KD3005P(args.device, baud=args.baud)
    try:
        psu.connect()

        psu.identify(force=args.force,
                     echo=_print_identity if args.version else None)

        psu.apply_settings(
            current=args.current,
            voltage=args.voltage,
            output=args.output,
            ocp=args.ocp,
            save=args.save,
            recall=args.recall,
        )

        if args.status:
            state = psu.read_status()
            print(format_status(state, color=sys.stdout.isatty()))

    except (DeviceUnavailable, UnrecognizedDevice) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KoradError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        psu.close()

    return 0


def _cli():
    sys.exit(main())


if __name__ == "__main__":
    _cli()
