"""
Blind-point computations for the PSI protocol.

The curve arithmetic lives in the circuits package and is driven as a
subprocess. Three steps:

- psi-step1: email address + client secret -> point   (initiate)
- psi-step2: point + relayer secret -> point          (apply)
- psi-step3: point + client secret -> point           (finalize)

Blinding commutes, so finalize(apply(initiate(e, r_c), r_r), r_c) equals
the point the relayer registers on-chain for e under r_r.
"""

import asyncio
import secrets
import tempfile
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import ValidationError

from .models import FIELD_ORDER, Point, field_to_hex

logger = structlog.get_logger()

SECRET_BITS = 253


class BlindPointError(Exception):
    """A blind-point computation failed or produced unusable output."""


def reduce_to_field(value: str) -> str:
    """Parse a hex scalar and reduce it modulo the field order."""
    return field_to_hex(int(value, 16) % FIELD_ORDER)


def generate_blinding_secret() -> str:
    """
    Draw a fresh BlindingSecret.

    253 random bits can exceed the field order; the draw is reduced so
    both sides' arithmetic sees the same scalar.
    """
    return field_to_hex(secrets.randbits(SECRET_BITS) % FIELD_ORDER)


class BlindPointService(Protocol):
    """The three blinding operations, wherever they execute."""

    async def initiate(self, email_addr: str, client_rand: str) -> Point: ...

    async def apply(self, point: Point, relayer_rand: str) -> Point: ...

    async def finalize(self, point: Point, client_rand: str) -> Point: ...


class CircuitBlindPointService:
    """
    Runs the circuits' psi-step scripts through yarn.

    Every invocation writes into its own temporary directory, so concurrent
    calls on equal points never share an output file.
    """

    def __init__(
        self,
        circuits_dir: str,
        input_files_dir: str,
        timeout: float = 120.0,
        executable: str = "yarn",
    ):
        self.circuits_dir = Path(circuits_dir)
        self.input_files_dir = Path(input_files_dir)
        self.timeout = timeout
        self.executable = executable

    async def initiate(self, email_addr: str, client_rand: str) -> Point:
        return await self._run(
            "psi-step1", ["--email-addr", email_addr, "--client-rand", client_rand]
        )

    async def apply(self, point: Point, relayer_rand: str) -> Point:
        return await self._run(
            "psi-step2", ["--x", point.x, "--y", point.y, "--relayer-rand", relayer_rand]
        )

    async def finalize(self, point: Point, client_rand: str) -> Point:
        return await self._run(
            "psi-step3", ["--x", point.x, "--y", point.y, "--client-rand", client_rand]
        )

    async def _run(self, step: str, args: list[str]) -> Point:
        self.input_files_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{step}-", dir=self.input_files_dir) as work_dir:
            output = Path(work_dir) / "point.json"
            command = [
                self.executable,
                "--cwd",
                str(self.circuits_dir),
                step,
                *args,
                "--output",
                str(output),
            ]

            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
            except asyncio.TimeoutError:
                logger.error("blind_point_timeout", step=step, timeout=self.timeout)
                raise BlindPointError(f"{step} timed out after {self.timeout}s") from None
            finally:
                # Timed out or cancelled: the child must not outlive the call.
                if proc.returncode is None:
                    proc.kill()
                    await proc.wait()

            if proc.returncode != 0:
                detail = stderr.decode("utf-8", errors="replace").strip()
                logger.error("blind_point_failed", step=step, returncode=proc.returncode)
                raise BlindPointError(f"{step} exited with status {proc.returncode}: {detail}")

            try:
                raw = output.read_text()
            except FileNotFoundError:
                raise BlindPointError(f"{step} did not write {output.name}") from None

        try:
            point = Point.model_validate_json(raw)
        except ValidationError as e:
            raise BlindPointError(f"{step} produced a malformed point: {e}") from e

        logger.debug("blind_point_computed", step=step, x=point.x)
        return point
