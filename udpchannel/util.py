#!/usr/bin/env python3
"""Logging utils, the default error sink **and** a helper that discovers our
outward‑facing IP address."""

from __future__ import annotations
import logging                           # Python stdlib logging framework
import socket                            # Needed for IP detection
import sys                               # For stderr/stdout handles
from logging.handlers import RotatingFileHandler
from typing import Callable, Optional

from .errors import UdpChannelError

__all__ = ["LOG", "ErrorSink", "configure_logging", "get_local_ip", "log_error"]

# Library modules only emit records through this logger; handlers are wired
# up by configure_logging(), which the command‑line entry points call.
LOG = logging.getLogger("udpchannel")

ErrorSink = Callable[[UdpChannelError], None]

# ----------------------------------------------------------------------
# configure_logging() attaches console + rotating file output to LOG.
# ----------------------------------------------------------------------

def configure_logging(level: int = logging.INFO,
                      logfile: Optional[str] = "udpchannel.log") -> logging.Logger:
    """Return the "udpchannel" logger with console (and optional file) output."""

    LOG.setLevel(level)

    # Calling twice must not duplicate every line.
    for handler in list(LOG.handlers):
        LOG.removeHandler(handler)
        handler.close()

    # Unified log line format.  Example: [23:59:59] INFO     Receiver bound on 0.0.0.0:8000
    fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", "%H:%M:%S")

    # ----- Console handler (stdout) -----
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    LOG.addHandler(sh)

    # ----- Rotating file handler -----
    # Rotates once file hits ±1 MiB, keeps 3 backups ⇒ log ≲ 4 MiB on disk.
    if logfile:
        fh = RotatingFileHandler(
            logfile,
            maxBytes=1_048_576,
            backupCount=3,
            encoding="utf-8",
        )
        fh.setFormatter(fmt)
        LOG.addHandler(fh)

    return LOG


def log_error(error: UdpChannelError) -> None:
    """Default error sink: asynchronous failures end up in the log."""
    LOG.error("%s", error)

# ----------------------------------------------------------------------
# best‑effort outward IP discovery (no external calls, works offline)
# ----------------------------------------------------------------------

def get_local_ip() -> str:
    """Return the host's primary IP, fallback to 127.0.0.1 on failure."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)  # UDP socket ≠ connect
    try:
        # connect() with UDP doesn't actually send packets until sendto(); that's
        # enough to make the OS select a source IP for that destination.
        sock.connect(("8.8.8.8", 80))          # Google DNS (never contacted)
        return sock.getsockname()[0]            # (<chosen‑ip>, <port>) tuple
    except OSError:
        return "127.0.0.1"                      # Either offline or no NIC
    finally:
        sock.close()                            # Always release resources
