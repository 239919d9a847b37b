import asyncio
import time
from typing import Optional, Tuple

ENCODING = "utf-8"


async def read_line(reader: asyncio.StreamReader) -> Optional[str]:
    """Read one newline-terminated line. Returns None on a clean end of stream."""
    data = await reader.readline()
    if not data:
        return None
    return data.decode(ENCODING, errors="replace").rstrip("\r\n")


def encode_line(line: str) -> bytes:
    return (line + "\n").encode(ENCODING)


async def write_line(writer: asyncio.StreamWriter, line: str) -> None:
    writer.write(encode_line(line))
    await writer.drain()


def now() -> float:
    # Monotonic: inactivity checks must not jump with wall-clock adjustments.
    return time.monotonic()


def peer_address(writer: asyncio.StreamWriter) -> Tuple[str, int]:
    peer = writer.get_extra_info("peername")
    if not peer:
        return "?.?.?.?", -1
    return str(peer[0]), int(peer[1])
