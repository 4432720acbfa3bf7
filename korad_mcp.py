#!/usr/bin/env python3
"""
KORAD KD3005P MCP Server

Exposes the KD3005P power supply as MCP tools for LLM-driven control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python korad_mcp.py                      # stdio transport

Or register it with an MCP client:
    {
        "mcpServers": {
            "korad": {
                "command": "python3",
                "args": ["korad_mcp.py"]
            }
        }
    }
"""

import json
from typing import Optional

from fastmcp import FastMCP

from korad import KD3005P

mcp = FastMCP(
    "KORAD KD3005P Power Supply",
    instructions=(
        "Controls a KORAD KD3005P bench power supply (0-30V, 0-5A) over a "
        "USB serial port. Always connect() first; it checks the device "
        "identity and refuses unknown devices unless force is set. Setters "
        "are not validated here or acknowledged by the device, so call "
        "read_status() to confirm a change took effect. Values are sent "
        "exactly as given, e.g. voltage '12.00' and current '1.000'."
    ),
)

# Global device handle, one connection at a time
_psu: Optional[KD3005P] = None


def _require_connection() -> KD3005P:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def connect(port: str, force: bool = False) -> str:
    """Connect to the KD3005P power supply.

    Opens the serial port and performs the ``*IDN?`` handshake. The port is
    closed again if the device is not a KD3005P (unless force is set).

    Args:
        port: Serial port path, e.g. "/dev/ttyACM0" (Linux) or "COM3" (Windows).
        force: Accept the device even if its identity does not match.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    psu = KD3005P(port)
    psu.connect()
    try:
        identity = psu.identify(force=force)
    except Exception:
        psu.close()
        raise
    _psu = psu

    return json.dumps({
        "status": "connected",
        "manufacturer": identity.manufacturer,
        "model": identity.model,
        "firmware": identity.firmware,
        "serial": identity.serial,
    })


def disconnect() -> str:
    """Close the serial port. The output is left in its current state."""
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    _psu.close()
    _psu = None
    return json.dumps({"status": "disconnected"})


def read_status() -> str:
    """Read the status of the KD3005P.

    Returns mode (CV or CC), output on/off, over-current protection on/off,
    the raw status byte, the voltage/current setpoints and the measured
    output voltage/current. The OCP flag comes from an undocumented status
    bit and is best effort.
    """
    psu = _require_connection()
    return json.dumps(psu.read_status())


def set_voltage(volts: str) -> str:
    """Set the voltage setpoint (``VSET1:``).

    This only changes the setpoint; it does not enable the output.

    Args:
        volts: Voltage as the device expects it, e.g. "05.00".
    """
    psu = _require_connection()
    psu.set_voltage(volts)
    return json.dumps({"status": "ok", "voltage_setpoint": volts})


def set_current(amps: str) -> str:
    """Set the current limit (``ISET1:``).

    This only changes the limit; it does not enable the output.

    Args:
        amps: Current limit as the device expects it, e.g. "1.000".
    """
    psu = _require_connection()
    psu.set_current(amps)
    return json.dumps({"status": "ok", "current_setpoint": amps})


def output_on() -> str:
    """Enable the output (``OUT1``) using the configured setpoints."""
    psu = _require_connection()
    psu.set_output(1)
    return json.dumps({"status": "ok", "output": "on"})


def output_off() -> str:
    """Disable the output (``OUT0``). Setpoints are preserved."""
    psu = _require_connection()
    psu.set_output(0)
    return json.dumps({"status": "ok", "output": "off"})


def set_ocp(enabled: bool) -> str:
    """Turn over-current protection on or off (``OCP1``/``OCP0``).

    With OCP on, the device cuts the output instead of regulating current
    when the current limit is reached.

    Args:
        enabled: True to enable OCP.
    """
    psu = _require_connection()
    psu.set_ocp(1 if enabled else 0)
    return json.dumps({"status": "ok", "ocp": "on" if enabled else "off"})


def save_preset(slot: int) -> str:
    """Store the current voltage/current settings in memory slot 1-5 (``SAV``).

    Args:
        slot: Memory slot number, 1 to 5.
    """
    psu = _require_connection()
    psu.save(slot)
    return json.dumps({"status": "ok", "saved": slot})


def recall_preset(slot: int) -> str:
    """Restore voltage/current settings from memory slot 1-5 (``RCL``).

    Args:
        slot: Memory slot number, 1 to 5.
    """
    psu = _require_connection()
    psu.recall(slot)
    return json.dumps({"status": "ok", "recalled": slot})


def apply_settings(
    current: Optional[str] = None,
    voltage: Optional[str] = None,
    output: Optional[str] = None,
    ocp: Optional[str] = None,
    save: Optional[str] = None,
    recall: Optional[str] = None,
) -> str:
    """Apply several settings in one call.

    Settings are always sent in the order current, voltage, output, OCP,
    save, recall, so e.g. a new voltage is in place before the output is
    switched on. Omitted settings are left untouched.

    Args:
        current: Current limit, e.g. "1.000".
        voltage: Voltage setpoint, e.g. "05.00".
        output: "0" or "1".
        ocp: "0" or "1".
        save: Memory slot 1-5 to store into.
        recall: Memory slot 1-5 to restore from.
    """
    psu = _require_connection()
    sent = psu.apply_settings(
        current=current, voltage=voltage, output=output,
        ocp=ocp, save=save, recall=recall,
    )
    return json.dumps({"status": "ok", "commands": sent})


# Registered without rebinding so the module functions stay directly callable.
for _tool in (
    connect, disconnect, read_status,
    set_voltage, set_current, output_on, output_off, set_ocp,
    save_preset, recall_preset, apply_settings,
):
    mcp.tool()(_tool)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
