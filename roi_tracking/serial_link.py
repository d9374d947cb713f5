# serial_link.py
"""Serial link that ships world coordinates to the downstream controller.

Wire format, one ASCII line per tracked blob and frame::

    <roi_id>,<x>,<y>,<timestamp>\\n

x and y are printed with six decimals, the timestamp is the grabber's raw
(unsigned) tick count.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import serial

from roi_tracking.errors import CommError


@dataclass(slots=True)
class _SerialCfg:
    port: str
    baudrate: int = 115_200
    timeout: float = 1.0


def format_record(roi_id: int, x: float, y: float, timestamp: int) -> bytes:
    if timestamp < 0:
        raise ValueError(f"timestamp must be unsigned, got {timestamp}")
    return f"{int(roi_id)},{x:.6f},{y:.6f},{int(timestamp)}\n".encode("ascii")


class SerialLink:
    """High-level wrapper around a pyserial port."""

    def __init__(
        self,
        port: str | Path,
        baudrate: int = 115_200,
        timeout: float = 1.0,
        write_timeout: float | None = None,
        *,
        auto_flush: bool = True,
    ):
        self._cfg = _SerialCfg(str(port), baudrate, timeout)
        self._auto_flush = auto_flush
        self._write_timeout = write_timeout
        self._ser: Optional[serial.Serial] = None
        self._lock = threading.Lock()
        self.records_sent = 0

    # ---------------- Serial plumbing ----------------
    def open(self) -> None:
        if self._ser and self._ser.is_open:
            return
        wt = self._write_timeout if self._write_timeout is not None else self._cfg.timeout
        try:
            self._ser = serial.Serial(
                port=self._cfg.port,
                baudrate=self._cfg.baudrate,
                timeout=self._cfg.timeout,
                write_timeout=wt,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
            )
        except serial.SerialException as exc:
            raise CommError(f"Cannot open {self._cfg.port}: {exc}") from exc
        time.sleep(0.2)
        if self._ser.is_open:
            self._ser.reset_input_buffer()
        print(f"[Serial] Opened {self._cfg.port} @ {self._cfg.baudrate} baud")

    def close(self) -> None:
        if self._ser and self._ser.is_open:
            self._ser.close()
            print(f"[Serial] Closed {self._cfg.port} after {self.records_sent} records")
        self._ser = None

    def is_open(self) -> bool:
        return bool(self._ser and self._ser.is_open)

    # ------------------ Public API -------------------
    def send(self, roi_id: int, x: float, y: float, timestamp: int) -> None:
        if not self.is_open():
            raise CommError(f"Serial port {self._cfg.port} is not open")
        payload = format_record(roi_id, x, y, timestamp)
        with self._lock:
            try:
                self._ser.write(payload)
                if self._auto_flush:
                    self._ser.flush()
            except serial.SerialException as exc:
                raise CommError(f"Write to {self._cfg.port} failed: {exc}") from exc
        self.records_sent += 1

    # ---------------- Context / repr ---------------
    def __enter__(self) -> "SerialLink":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open() else "closed"
        return f"<SerialLink port={self._cfg.port!r} ({state})>"


class ConsoleLink:
    """Drop-in for SerialLink that prints records instead (no port configured)."""

    def __init__(self) -> None:
        self.records_sent = 0

    def send(self, roi_id: int, x: float, y: float, timestamp: int) -> None:
        print(f"[Serial] {format_record(roi_id, x, y, timestamp).decode('ascii').rstrip()}")
        self.records_sent += 1

    def __enter__(self) -> "ConsoleLink":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        pass
