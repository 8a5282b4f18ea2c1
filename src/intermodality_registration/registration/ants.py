"""ANTs command-line backends for registration and resampling.

Commands are assembled as argument lists and run through a small cancellable
runner. Every command is logged between ``BEGIN`` and ``END`` markers so a
run log can be replayed by hand.
"""

from __future__ import annotations

import collections
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from ..errors import ExternalCommandError, MissingBinaryError
from ..metadata.paths import prefix_directory
from .services import InterpolationMode, RegistrationRequest, ResampleRequest, RunContext
from .stages import RegistrationSettings
from .transforms import (
    AFFINE_SUFFIX,
    INVERSE_WARP_SUFFIX,
    WARP_SUFFIX,
    TransformHandle,
    collect_prefix_steps,
)

logger = logging.getLogger(__name__)

ANTSPATH_ENV = "ANTSPATH"
THREADS_ENV = "ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"

REGISTRATION_BINARY = "antsRegistration"
APPLY_TRANSFORMS_BINARY = "antsApplyTransforms"
REORIENT_TENSOR_BINARY = "ReorientTensorImage"

_TAIL_LINES = 20

STAGE_OUTPUT_SUFFIXES = (
    AFFINE_SUFFIX,
    WARP_SUFFIX,
    INVERSE_WARP_SUFFIX,
    "Warped.nii.gz",
    "InverseWarped.nii.gz",
)

CommandRunner = Callable[..., None]


@dataclass(frozen=True)
class AntsBinaries:
    registration: Path
    apply_transforms: Path
    reorient_tensor: Optional[Path] = None


def find_binary(name: str, antspath: Optional[str] = None) -> Optional[Path]:
    """Look in ``$ANTSPATH`` first, then on ``PATH``."""

    base = antspath if antspath is not None else os.environ.get(ANTSPATH_ENV)
    if base:
        candidate = Path(base) / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    found = shutil.which(name)
    return Path(found) if found else None


def discover_binaries(*, need_tensor: bool = False, antspath: Optional[str] = None) -> AntsBinaries:
    names = [REGISTRATION_BINARY, APPLY_TRANSFORMS_BINARY]
    if need_tensor:
        names.append(REORIENT_TENSOR_BINARY)
    found = {name: find_binary(name, antspath) for name in names}
    missing = [name for name, path in found.items() if path is None]
    if missing:
        raise MissingBinaryError(
            f"cannot find {', '.join(missing)}; please (re)define ${ANTSPATH_ENV} "
            "in your environment or add the ANTs binaries to PATH"
        )
    return AntsBinaries(
        registration=found[REGISTRATION_BINARY],
        apply_transforms=found[APPLY_TRANSFORMS_BINARY],
        reorient_tensor=found.get(REORIENT_TENSOR_BINARY),
    )


def child_environment(threads: Optional[int] = None) -> dict[str, str]:
    env = dict(os.environ)
    if threads:
        env[THREADS_ENV] = str(int(threads))
    return env


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    logger.warning("Terminating %s (pid %s)", process.args[0], process.pid)
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_command(
    command: Sequence[str],
    context: RunContext,
    *,
    env: Optional[Mapping[str, str]] = None,
    poll_interval: float = 0.2,
) -> None:
    """Run ``command`` to completion, honouring cancellation and the deadline."""

    command = [str(part) for part in command]
    logger.info("BEGIN >>>>>>>>>>>>>>>>>>>>")
    logger.info("%s", " ".join(command))
    context.check()

    tail: collections.deque[str] = collections.deque(maxlen=_TAIL_LINES)
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env=dict(env) if env is not None else None,
    )

    def _pump() -> None:
        assert process.stdout is not None
        for line in process.stdout:
            line = line.rstrip()
            if line:
                tail.append(line)
                logger.debug("%s", line)

    reader = threading.Thread(target=_pump, daemon=True)
    reader.start()
    try:
        while True:
            try:
                returncode = process.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                context.check()
    except BaseException:
        _terminate(process)
        raise
    finally:
        reader.join(timeout=5)

    logger.info("END   <<<<<<<<<<<<<<<<<<<<")
    if returncode != 0:
        raise ExternalCommandError(command, returncode, "\n".join(tail))


def clear_stage_outputs(prefix: str) -> list[Path]:
    """Remove registration outputs left under ``prefix`` by an earlier run."""

    removed = []
    for suffix in STAGE_OUTPUT_SUFFIXES:
        path = Path(prefix + suffix)
        if path.is_file():
            path.unlink()
            removed.append(path)
    if removed:
        logger.warning(
            "Removed stale registration outputs: %s", ", ".join(str(p) for p in removed)
        )
    return removed


class AntsRegistrationService:
    """One ``antsRegistration`` call per stage, collapsed outputs."""

    def __init__(
        self,
        binaries: AntsBinaries,
        settings: Optional[RegistrationSettings] = None,
        *,
        threads: Optional[int] = None,
        runner: CommandRunner = run_command,
    ) -> None:
        self.binaries = binaries
        self.settings = settings or RegistrationSettings()
        self.threads = threads
        self.runner = runner

    def _initial_arguments(self, request: RegistrationRequest) -> list[str]:
        if request.initial_transform is None:
            return ["--initial-moving-transform", f"[{request.fixed},{request.moving},1]"]
        workdir = request.workdir or prefix_directory(request.output_prefix)
        args: list[str] = []
        for item in request.initial_transform.ants_transform_list(workdir):
            args.extend(["--initial-moving-transform", item])
        return args

    def build_command(self, request: RegistrationRequest) -> list[str]:
        cfg = self.settings
        stage = request.stage
        prefix = request.output_prefix
        fixed, moving = str(request.fixed), str(request.moving)
        command = [
            str(self.binaries.registration),
            "--dimensionality", str(request.dimensionality),
            "--float", "1" if cfg.use_float else "0",
            "--output", f"[{prefix},{prefix}Warped.nii.gz,{prefix}InverseWarped.nii.gz]",
            "--interpolation", cfg.interpolation,
            "--winsorize-image-intensities",
            f"[{cfg.winsorize_lower_quantile:g},{cfg.winsorize_upper_quantile:g}]",
            "--use-histogram-matching", "1" if cfg.use_histogram_matching else "0",
        ]
        command += self._initial_arguments(request)
        command += [
            "--transform", stage.transform.render(),
            "--metric", stage.metric.render(fixed, moving),
            "--convergence", stage.convergence.render(),
            "--shrink-factors", stage.render_shrink_factors(),
            "--smoothing-sigmas", stage.render_smoothing_sigmas(),
        ]
        if request.mask is not None:
            command += ["--masks", str(request.mask)]
        command += [
            "--collapse-output-transforms", "1" if cfg.collapse_output_transforms else "0",
            "--verbose", "1",
        ]
        return command

    def register(self, request: RegistrationRequest, context: RunContext) -> TransformHandle:
        command = self.build_command(request)
        clear_stage_outputs(request.output_prefix)
        self.runner(command, context, env=child_environment(self.threads))
        steps = collect_prefix_steps(
            request.output_prefix,
            request.dimensionality,
            deformable=request.stage.family.is_deformable,
        )
        return TransformHandle(
            steps=steps,
            source=request.stage.moving_role,
            target=request.stage.fixed_role,
            dimensionality=request.dimensionality,
        )


class AntsResamplingService:
    """``antsApplyTransforms`` plus ``ReorientTensorImage`` for tensors."""

    def __init__(
        self,
        binaries: AntsBinaries,
        workdir: Path,
        *,
        threads: Optional[int] = None,
        runner: CommandRunner = run_command,
    ) -> None:
        self.binaries = binaries
        self.workdir = Path(workdir)
        self.threads = threads
        self.runner = runner

    def _transform_arguments(self, transform: TransformHandle) -> list[str]:
        args: list[str] = []
        for item in transform.ants_transform_list(self.workdir):
            args.extend(["-t", item])
        return args

    def build_commands(self, request: ResampleRequest) -> list[list[str]]:
        tensor = request.interpolation is InterpolationMode.TENSOR
        interpolation = (
            InterpolationMode.LINEAR if tensor else request.interpolation
        ).value
        transform_args = self._transform_arguments(request.transform)
        dim = str(request.dimensionality)
        commands = [
            [
                str(self.binaries.apply_transforms),
                "-d", dim,
                "-e", "2" if tensor else "0",
                "-i", str(request.input),
                "-o", str(request.output),
                "-r", str(request.reference),
                "-n", interpolation,
            ]
            + transform_args
        ]
        if tensor:
            if self.binaries.reorient_tensor is None:
                raise MissingBinaryError(f"{REORIENT_TENSOR_BINARY} is required for tensor images")
            field = self.workdir / f"{_stem(request.output)}_field.nii.gz"
            commands.append(
                [
                    str(self.binaries.apply_transforms),
                    "-d", dim,
                    "-o", f"[{field},1]",
                    "-r", str(request.reference),
                ]
                + transform_args
            )
            commands.append(
                [
                    str(self.binaries.reorient_tensor),
                    dim,
                    str(request.output),
                    str(request.output),
                    str(field),
                ]
            )
        return commands

    def resample(self, request: ResampleRequest, context: RunContext) -> Path:
        env = child_environment(self.threads)
        for command in self.build_commands(request):
            self.runner(command, context, env=env)
        if not Path(request.output).is_file():
            raise FileNotFoundError(f"{APPLY_TRANSFORMS_BINARY} did not write {request.output}")
        return Path(request.output)


def _stem(path: Path) -> str:
    name = Path(path).name
    for suffix in (".nii.gz", ".nii", ".nrrd", ".mha"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return Path(path).stem
