"""Candidate list ingestion.

Reads ``(host, port)`` pairs from a file, or from every regular file under a
directory, accepting the assorted formats scan tools and share lists use:

    1.2.3.4 443              1.2.3.4:443            [2606:4700::1]:8443
    example.com              1.2.3.4,443            1.2.3.4:443#note
    vless://uuid@1.2.3.4:443?security=tls#name
    open tcp 443 1.2.3.4 1700000000       (masscan -oL)
    1.2.3.4:443 | HKG | 120ms
    {"ip": "1.2.3.4", "port": "443"}

``.csv`` files are read as tables with the address in the first column and
the port in the second.  A missing port means 443.
"""

from __future__ import annotations

import csv
import io
import ipaddress
import json
import logging
import re
from pathlib import Path
from typing import Iterable, Optional

from edgeprobe.config import DEFAULT_PORT
from edgeprobe.exceptions import SetupError
from edgeprobe.models import Candidate

logger = logging.getLogger(__name__)

_HOST = r"[a-zA-Z0-9.-]+"
_V6_BRACKETED = r"\[[0-9a-fA-F:.]+\]"

_PROXY_LINK_RE = re.compile(
    rf"@({_V6_BRACKETED}|[0-9]{{1,3}}(?:\.[0-9]{{1,3}}){{3}}|{_HOST})(?::(\d{{1,5}}))?"
)
_HOST_COLON_RE = re.compile(rf"^({_V6_BRACKETED}|{_HOST})(?::(\d{{1,5}}))?$")
_HOST_SPACE_RE = re.compile(rf"^([0-9a-fA-F:.]+|{_HOST})\s+(\d{{1,5}})$")
_OPEN_TCP_RE = re.compile(rf"open tcp (\d+) ([\d.]+|{_V6_BRACKETED}|{_HOST}) \d+")
_PIPE_RE = re.compile(rf"^([\d.]+|{_V6_BRACKETED}|{_HOST}):(\d{{1,5}}) \|")

_FULLWIDTH_COLON = "："


def _make(host: str, port: str | int) -> Optional[Candidate]:
    host = host.strip().strip("[]").strip()
    try:
        port_num = int(str(port).strip())
    except ValueError:
        return None
    if not host or not 0 < port_num < 65536:
        return None
    return Candidate(host, port_num)


def _is_bare_ipv6(text: str) -> bool:
    try:
        return ipaddress.ip_address(text).version == 6
    except ValueError:
        return False


def parse_line(line: str) -> Optional[Candidate]:
    """Parse one text line into a :class:`Candidate`.

    Returns None for blank lines, comments and lines that hold no usable
    address/port pair.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    match = _PROXY_LINK_RE.search(line)
    if match:
        candidate = _make(match.group(1), match.group(2) or DEFAULT_PORT)
        if candidate:
            return candidate

    match = _HOST_COLON_RE.match(line)
    if match:
        candidate = _make(match.group(1), match.group(2) or DEFAULT_PORT)
        if candidate:
            return candidate

    if _is_bare_ipv6(line):
        return Candidate(line, DEFAULT_PORT)

    match = _HOST_SPACE_RE.match(line)
    if match:
        candidate = _make(match.group(1), match.group(2))
        if candidate:
            return candidate

    match = _OPEN_TCP_RE.search(line)
    if match:
        candidate = _make(match.group(2), match.group(1))
        if candidate:
            return candidate

    match = _PIPE_RE.match(line)
    if match:
        candidate = _make(match.group(1), match.group(2))
        if candidate:
            return candidate

    return _parse_loose(line)


def _parse_loose(line: str) -> Optional[Candidate]:
    """Fallback for JSON objects and ``host<sep>port`` with trailing junk."""
    host = port = ""

    try:
        data = json.loads(line)
    except ValueError:
        data = None

    if isinstance(data, dict) and data.get("ip") and data.get("port"):
        host, port = str(data["ip"]), str(data["port"])
    elif ":" in line or _FULLWIDTH_COLON in line:
        sep = ":" if ":" in line else _FULLWIDTH_COLON
        host, _, port = line.rpartition(sep)
        port = port.split("#", 1)[0]
    elif "," in line:
        parts = line.split(",")
        host, port = parts[0], parts[1]
    else:
        parts = line.split()
        if len(parts) >= 2:
            host, port = parts[0], parts[1]

    if not host or not port:
        logger.warning("Skipping unparseable line: %s", line)
        return None

    candidate = _make(host, port)
    if candidate is None:
        logger.warning("Skipping line with invalid port: %s", line)
    return candidate


def parse_lines(lines: Iterable[str]) -> list[Candidate]:
    """Parse every usable line, keeping duplicates and input order."""
    return [c for c in (parse_line(line) for line in lines) if c is not None]


def parse_csv(text: str) -> list[Candidate]:
    """Parse a CSV/TSV table: header row skipped, address and port in columns 1-2."""
    text = text.lstrip("\ufeff")
    first_line = text.split("\n", 1)[0]
    delimiter = "\t" if "\t" in first_line and "," not in first_line else ","

    candidates: list[Candidate] = []
    reader = csv.reader(io.StringIO(text), delimiter=delimiter, skipinitialspace=True)
    for i, row in enumerate(reader):
        if i == 0 or len(row) < 3:
            continue
        candidate = _make(row[0], row[1]) if row[0].strip() and row[1].strip() else None
        if candidate:
            candidates.append(candidate)
    return candidates


def read_file(path: Path) -> list[Candidate]:
    """Read all candidates from a single file."""
    text = path.read_text(encoding="utf-8", errors="replace")
    if path.suffix.lower() == ".csv":
        return parse_csv(text)
    return parse_lines(text.splitlines())


def dedupe(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Drop repeated candidates, keeping the first occurrence of each."""
    return list(dict.fromkeys(candidates))


class CandidateSource:
    """Loads a de-duplicated, ordered candidate list from a file or directory."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.raw_count = 0
        self.duplicates = 0

    def _files(self) -> list[Path]:
        files = []
        for p in sorted(self.path.rglob("*")):
            if not p.is_file():
                continue
            if p.name.startswith(".") or p.name.endswith("~"):
                continue
            files.append(p)
        return files

    def load(self) -> tuple[list[Candidate], int]:
        """Return (candidates, total) with duplicates removed.

        Raises
        ------
        SetupError
            If the path does not exist or a single input file is unreadable.
        """
        if not self.path.exists():
            raise SetupError(f"Candidate list not found: {self.path}")

        collected: list[Candidate] = []
        if self.path.is_dir():
            for file_path in self._files():
                try:
                    found = read_file(file_path)
                except OSError as exc:
                    logger.warning("Failed to read %s: %s", file_path, exc)
                    continue
                logger.info("Read %d candidates from %s", len(found), file_path)
                collected.extend(found)
        else:
            try:
                collected = read_file(self.path)
            except OSError as exc:
                raise SetupError(f"Failed to read {self.path}: {exc}") from exc
            logger.info("Read %d candidates from %s", len(collected), self.path)

        candidates = dedupe(collected)
        self.raw_count = len(collected)
        self.duplicates = self.raw_count - len(candidates)
        return candidates, len(candidates)
