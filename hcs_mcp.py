#!/usr/bin/env python3
"""
HCS MCP Server

Exposes an EA-PS2000 or Voltcraft PPS power supply as MCP tools for
LLM-driven control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python hcs_mcp.py                      # stdio transport (default)

Or configure in an MCP client:
    {
        "mcpServers": {
            "hcs": {
                "command": "python3",
                "args": ["hcs_mcp.py"]
            }
        }
    }
"""

import json
from typing import Optional

from fastmcp import FastMCP

from hcs import DRIVER_NAMES, PowerSupply, PSUError, UnsupportedError, discover

mcp = FastMCP(
    "HCS Power Supply",
    instructions=(
        "Controls an Elektro-Automatik PS 2000 or Voltcraft PPS bench power "
        "supply over a serial port. Always connect() first, then use the "
        "other tools. The Voltcraft PPS cannot report or set OVP/OCP, the "
        "output state or the operating mode; those tools answer with an "
        "error for it. disconnect() releases remote control of the device."
    ),
)

# Global device handle, one connection at a time
_psu: Optional[PowerSupply] = None


def _require_connection() -> PowerSupply:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


def _error(exc: Exception) -> str:
    return json.dumps({"error": str(exc)})


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(port: Optional[str] = None, model: Optional[str] = None) -> str:
    """Connect to the power supply.

    Without a model the first attached supply with a known USB id is used.

    Args:
        port: Serial port path, e.g. "/dev/ttyACM0". Optional when the
              supply can be auto-detected.
        model: "eaps" for EA-PS2000 or "pps" for Voltcraft PPS.
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    if model is not None:
        cls = DRIVER_NAMES.get(model)
        if cls is None:
            return json.dumps({"error": f"Unknown model {model!r}, use one of "
                                        f"{sorted(DRIVER_NAMES)}"})
    else:
        cls, found = discover()
        if cls is None:
            return json.dumps({"error": "No supported power supply found"})
        port = port or found

    psu = cls(port)
    try:
        psu.open()
    except PSUError as exc:
        return _error(exc)
    _psu = psu

    return json.dumps({
        "status": "connected",
        "model": psu.model,
        "port": psu.port,
    })


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the power supply and hand control back to it."""
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    psu, _psu = _psu, None
    try:
        psu.close()
    except PSUError as exc:
        return _error(exc)
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def describe() -> str:
    """Read identification, set points, protection limits and readings.

    Values the connected model cannot report are null.
    """
    psu = _require_connection()
    try:
        report = psu.describe()
    except PSUError as exc:
        return _error(exc)

    for key in ["voltage_setpoint", "output_voltage", "over_voltage",
                "nominal_voltage"]:
        if report.get(key) is not None:
            report[key] = _fmt(report[key], 2)
    for key in ["current_setpoint", "output_current", "over_current",
                "nominal_current"]:
        if report.get(key) is not None:
            report[key] = _fmt(report[key], 3)
    for key in ["output_power", "nominal_power"]:
        if report.get(key) is not None:
            report[key] = _fmt(report[key], 2)
    return json.dumps(report)


@mcp.tool()
def read_output() -> str:
    """Read the measured output voltage and current."""
    psu = _require_connection()
    try:
        voltage = psu.get_voltage_actual()
        current = psu.get_current_actual()
    except PSUError as exc:
        return _error(exc)
    return json.dumps({
        "output_voltage": _fmt(voltage, 2),
        "output_current": _fmt(current, 3),
        "output_power": _fmt(voltage * current, 2),
    })


@mcp.tool()
def set_voltage(volts: float) -> str:
    """Set the voltage set point. Does not enable the output.

    Args:
        volts: Desired voltage in volts.
    """
    psu = _require_connection()
    try:
        psu.set_voltage(volts)
    except (PSUError, ValueError) as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "voltage_setpoint": _fmt(volts, 3)})


@mcp.tool()
def set_current(amps: float) -> str:
    """Set the current limit. Does not enable the output.

    Args:
        amps: Desired current limit in amps.
    """
    psu = _require_connection()
    try:
        psu.set_current(amps)
    except (PSUError, ValueError) as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "current_setpoint": _fmt(amps, 3)})


@mcp.tool()
def output_on() -> str:
    """Enable the output with the configured set points."""
    psu = _require_connection()
    try:
        psu.enable_output()
    except PSUError as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "output": "on"})


@mcp.tool()
def output_off() -> str:
    """Disable the output. Set points are preserved."""
    psu = _require_connection()
    try:
        psu.disable_output()
    except PSUError as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "output": "off"})


@mcp.tool()
def set_ovp(volts: float) -> str:
    """Set the over-voltage protection threshold (EA-PS2000 only).

    Args:
        volts: OVP threshold in volts.
    """
    psu = _require_connection()
    try:
        psu.set_over_voltage(volts)
    except UnsupportedError as exc:
        return json.dumps({"error": str(exc), "unsupported": True})
    except (PSUError, ValueError) as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "ovp": _fmt(volts, 2)})


@mcp.tool()
def set_ocp(amps: float) -> str:
    """Set the over-current protection threshold (EA-PS2000 only).

    Args:
        amps: OCP threshold in amps.
    """
    psu = _require_connection()
    try:
        psu.set_over_current(amps)
    except UnsupportedError as exc:
        return json.dumps({"error": str(exc), "unsupported": True})
    except (PSUError, ValueError) as exc:
        return _error(exc)
    return json.dumps({"status": "ok", "ocp": _fmt(amps, 3)})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
