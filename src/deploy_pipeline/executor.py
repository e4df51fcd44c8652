"""
Stage execution.

The executor runs a stage's commands in a scratch working directory seeded
from the working artifact, retrying failed attempts with exponential backoff
and killing attempts that exceed the stage timeout. It also runs deployment
lifecycle hooks, so every external process the orchestrator spawns goes
through the same timeout and identity enforcement.
"""
import asyncio
import logging
import os
import shutil
import signal
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .artifacts import ArtifactStore, pack_files
from .definitions import Hook, HookName, Stage
from .errors import HookExecutionFailure, PermanentStageFailure, StageTimeout, TransientStageFailure
from .models import Artifact, Host, StageResult, StageStatus, utc_now
from .utils.decorators import async_log_execution_time

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class StageContext:
    """Per-run values exposed to stage commands and hooks."""
    run_id: str
    source_revision: str
    environment: str

    def env(self) -> Dict[str, str]:
        return {
            "PIPELINE_RUN_ID": self.run_id,
            "SOURCE_REVISION": self.source_revision,
            "TARGET_ENVIRONMENT": self.environment,
        }


class StageLogSink:
    """Writes stage output to ``<log_dir>/<run_id>/<stage>.log`` and the module logger."""

    def __init__(self, log_dir: Union[str, Path]):
        self.log_dir = Path(log_dir)

    def path_for(self, run_id: str, stage_name: str) -> Path:
        return self.log_dir / run_id / f"{stage_name}.log"

    def write(self, run_id: str, stage_name: str, line: str) -> None:
        path = self.path_for(run_id, stage_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(line + "\n")
        logger.debug(f"[{run_id}/{stage_name}] {line}")

    def read(self, run_id: str, stage_name: str) -> List[str]:
        path = self.path_for(run_id, stage_name)
        if not path.exists():
            return []
        return path.read_text().splitlines()


def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a spawned process and its process group."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def _pump_lines(stream: asyncio.StreamReader, emit) -> None:
    """Forward ``stream`` to ``emit`` one decoded line at a time, however long the lines are."""
    pending = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending.extend(chunk)
        *lines, rest = pending.split(b"\n")
        for line in lines:
            emit(line.decode(errors="replace"))
        pending = bytearray(rest)
    if pending:
        emit(pending.decode(errors="replace"))


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` if it is still running and wait for it to exit."""
    if process.returncode is None:
        _kill(process)
        await process.wait()


class StageExecutor:
    """Runs a single stage as a unit of work with a retry policy."""

    def __init__(
        self,
        store: ArtifactStore,
        log_sink: StageLogSink,
        retry_backoff: float = 1.0,
        hooks_dir: Optional[Union[str, Path]] = None,
        shell: str = "/bin/sh",
    ):
        self.store = store
        self.log_sink = log_sink
        self.retry_backoff = retry_backoff
        self.hooks_dir = Path(hooks_dir) if hooks_dir else None
        self.shell = shell

    @async_log_execution_time
    async def run(self, stage: Stage, working_artifact: Optional[Artifact], context: StageContext) -> StageResult:
        """Run ``stage`` and return its terminal result.

        A non-zero exit is retried up to ``stage.retry_count`` times. An attempt
        exceeding ``stage.timeout`` is killed and the stage fails without retry.
        """
        result = StageResult(name=stage.name, status=StageStatus.RUNNING.value, started_at=utc_now())
        max_attempts = stage.retry_count + 1
        delay = self.retry_backoff

        def log(line: str) -> None:
            result.logs.append(line)
            self.log_sink.write(context.run_id, stage.name, line)

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            log(f"--- attempt {attempt}/{max_attempts} ---")
            workdir = Path(tempfile.mkdtemp(prefix=f"{stage.name}-"))

            try:
                if working_artifact is not None:
                    await asyncio.to_thread(self.store.fetch, working_artifact, workdir)

                env = self._stage_env(stage, context, working_artifact, attempt)
                await asyncio.wait_for(self._run_attempt(stage, workdir, env, log), timeout=stage.timeout)

                result.output_artifact = await self._collect_output(stage, workdir, working_artifact, context, log)
                result.status = StageStatus.SUCCEEDED.value
                result.completed_at = utc_now()
                logger.info(f"Stage {stage.name} succeeded on attempt {attempt}/{max_attempts}")
                return result

            except asyncio.TimeoutError:
                error = StageTimeout(
                    f"Stage {stage.name} exceeded {stage.timeout:.1f}s timeout and was killed",
                    stage_name=stage.name,
                )
                log(str(error))
                logger.error(str(error))
                return self._fail(result, error)

            except TransientStageFailure as e:
                log(str(e))
                if attempt >= max_attempts:
                    error = PermanentStageFailure(
                        f"Stage {stage.name} failed after {attempt} attempts: {e}",
                        stage_name=stage.name,
                        exit_code=e.exit_code,
                    )
                    logger.error(str(error))
                    return self._fail(result, error)

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} of stage {stage.name} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2

            finally:
                shutil.rmtree(workdir, ignore_errors=True)

        # max_attempts is always >= 1, so the loop returns before reaching here
        raise PermanentStageFailure(f"Stage {stage.name} did not run", stage_name=stage.name)

    def _fail(self, result: StageResult, error: Exception) -> StageResult:
        result.status = StageStatus.FAILED.value
        result.error = str(error)
        result.completed_at = utc_now()
        return result

    def _stage_env(self, stage: Stage, context: StageContext,
                   artifact: Optional[Artifact], attempt: int) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(context.env())
        env.update({
            "STAGE_NAME": stage.name,
            "ATTEMPT": str(attempt),
            "ARTIFACT_DIGEST": artifact.digest if artifact else "",
        })
        env.update(stage.env)
        return env

    async def _run_attempt(self, stage: Stage, workdir: Path, env: Dict[str, str], log) -> None:
        for command in stage.commands:
            log(f"$ {command}")
            exit_code = await self._run_command(command, workdir, env, log)
            if exit_code != 0:
                raise TransientStageFailure(
                    f"Command exited with status {exit_code}: {command}",
                    stage_name=stage.name,
                    exit_code=exit_code,
                )

    async def _run_command(self, command: str, workdir: Path, env: Dict[str, str], log) -> int:
        process = await asyncio.create_subprocess_exec(
            self.shell, "-c", command,
            cwd=str(workdir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            await _pump_lines(process.stdout, log)
            return await process.wait()
        finally:
            await _reap(process)

    async def _collect_output(self, stage: Stage, workdir: Path, working_artifact: Optional[Artifact],
                              context: StageContext, log) -> Optional[Artifact]:
        if not stage.artifacts:
            return working_artifact

        data = await asyncio.to_thread(pack_files, workdir, stage.artifacts)
        if data is None:
            log(f"No files matched {stage.artifacts}; passing working artifact through")
            return working_artifact

        artifact = await asyncio.to_thread(self.store.put, data, context.run_id)
        log(f"Stored output artifact {artifact.digest}")
        return artifact

    def _resolve_hook_path(self, hook: Hook) -> str:
        path = Path(hook.path)
        if not path.is_absolute() and self.hooks_dir is not None:
            path = self.hooks_dir / path
        return str(path)

    async def run_hook(self, name: HookName, hook: Hook, context: StageContext, stage_name: str,
                       target: str, revision: str, host: Optional[Host] = None) -> int:
        """Run a lifecycle hook as ``hook.run_as`` with ``hook.timeout``.

        Returns the exit status (always 0); raises HookExecutionFailure on a
        non-zero exit, a timeout, or when the executable cannot be started.
        """
        env = dict(os.environ)
        env.update(context.env())
        env.update({
            "HOOK_NAME": name.value,
            "DEPLOY_TARGET": target,
            "DEPLOY_REVISION": revision,
            "DEPLOY_HOST": host.host_id if host else "",
            "DEPLOY_HOST_ADDRESS": host.address if host else "",
        })

        label = f"hook {name.value}" + (f" on {host.host_id}" if host else "")
        self.log_sink.write(context.run_id, stage_name, f"--- {label} ---")

        spawn_kwargs = {}
        if hook.run_as:
            spawn_kwargs["user"] = hook.run_as

        try:
            process = await asyncio.create_subprocess_exec(
                self._resolve_hook_path(hook), *hook.args,
                env=env,
                cwd=str(self.hooks_dir) if self.hooks_dir else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                **spawn_kwargs,
            )
        except (OSError, KeyError) as e:
            # KeyError: unknown run_as user
            raise HookExecutionFailure(f"Could not start {label}: {e}", hook=name.value) from e

        def write(line: str) -> None:
            self.log_sink.write(context.run_id, stage_name, line)

        async def communicate() -> int:
            await _pump_lines(process.stdout, write)
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(communicate(), timeout=hook.timeout)
        except asyncio.TimeoutError as e:
            raise HookExecutionFailure(f"{label} timed out after {hook.timeout:.1f}s", hook=name.value) from e
        finally:
            await _reap(process)

        if exit_code != 0:
            self.log_sink.write(context.run_id, stage_name, f"{label} exited with status {exit_code}")
            raise HookExecutionFailure(f"{label} exited with status {exit_code}", hook=name.value,
                                       exit_code=exit_code)

        logger.info(f"{label} completed for {target} ({revision})")
        return exit_code
