import asyncio
import logging
import os
import shlex
import signal
import time
from typing import List, Optional, Sequence

from .errors import EngineFailure
from .jobs import JobRegistry
from .models import Diagnostics, Job
from .storage import ArtifactStore

logger = logging.getLogger(__name__)


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()


def _signal_reason(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = str(-returncode)
    return f"engine terminated by signal {name}"


class JobExecutor:
    """Runs the external engine for one staged job at a time per slot.

    The engine is always spawned from an argument vector; file names never
    pass through a shell.
    """

    def __init__(
        self,
        engine_path: str,
        store: ArtifactStore,
        registry: JobRegistry,
        engine_args: Sequence[str] = (),
        timeout_sec: float = 120.0,
        max_concurrent: int = 4,
        max_error_chars: int = 500,
    ):
        self.engine_path = engine_path
        self.engine_args = list(engine_args)
        self.store = store
        self.registry = registry
        self.timeout_sec = timeout_sec
        self.max_error_chars = max_error_chars
        self._slots = asyncio.Semaphore(max_concurrent)

    def command(self, job: Job) -> List[str]:
        return [self.engine_path, *self.engine_args, job.operation, *job.inputs, job.output_path]

    async def run(self, job: Job) -> Job:
        """Run the engine for a staged job.

        Returns the succeeded job, or raises EngineFailure. Staged inputs are
        removed before this returns on every path.
        """
        try:
            async with self._slots:
                self.registry.update(job.job_id, status="running", started_at=time.time())
                argv = self.command(job)
                logger.info("Job %s: running %s", job.job_id, shlex.join(argv))
                diag = await self._invoke(argv)
        except BaseException:
            self.store.discard([job.output_path])
            self.registry.update(
                job.job_id, status="failed", finished_at=time.time(), error="job aborted"
            )
            raise
        finally:
            leftover = self.store.discard(job.inputs)
            if leftover:
                logger.error("Job %s left %d staged input(s) behind", job.job_id, len(leftover))

        return self._settle(job, diag)

    def _settle(self, job: Job, diag: Diagnostics) -> Job:
        if diag.reason is None and diag.exit_code == 0 and os.path.isfile(job.output_path):
            done = self.registry.update(
                job.job_id, status="succeeded", finished_at=time.time(), diagnostics=diag
            )
            logger.info("Job %s succeeded: %s", job.job_id, os.path.basename(job.output_path))
            return done or job

        if diag.reason is None:
            if diag.exit_code != 0:
                diag.reason = f"engine exited with code {diag.exit_code}"
            else:
                diag.reason = "engine produced no output"

        # at most one output per job, and only a successful one
        self.store.discard([job.output_path])
        message = self.sanitize(diag.stderr or diag.reason)
        self.registry.update(
            job.job_id, status="failed", finished_at=time.time(), error=message, diagnostics=diag
        )
        logger.warning("Job %s failed (%s): %s", job.job_id, diag.reason, diag.stderr)
        raise EngineFailure(message, diag)

    async def _invoke(self, argv: List[str]) -> Diagnostics:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return Diagnostics(reason=f"engine could not be started: {exc.strerror or exc}")

        try:
            if self.timeout_sec > 0:
                out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
            else:
                out, err = await proc.communicate()
        except asyncio.TimeoutError:
            await self._kill(proc)
            return Diagnostics(
                exit_code=proc.returncode,
                reason=f"engine timed out after {self.timeout_sec:g}s",
            )
        except BaseException:
            await self._kill(proc)
            raise

        return Diagnostics(
            exit_code=proc.returncode,
            stdout=_decode(out),
            stderr=_decode(err),
            reason=_signal_reason(proc.returncode),
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    def sanitize(self, text: str) -> str:
        """Strip server paths and bound the length of engine diagnostics."""
        for d in (self.store.staging_dir, self.store.output_dir):
            text = text.replace(str(d) + os.sep, "").replace(str(d), "")
        text = " ".join(text.split())
        if len(text) > self.max_error_chars:
            text = text[: max(0, self.max_error_chars - 3)].rstrip() + "..."
        return text
