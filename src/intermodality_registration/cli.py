"""Command-line entry point.

Single-letter options follow the ANTs intermodality script so existing
invocations keep working; long options configure the additions.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .errors import ConfigurationError, PipelineError
from .metadata.config import build_pipeline_config, configure_logging
from .pipeline.orchestrator import run_pipeline

logger = logging.getLogger(__name__)

DESCRIPTION = """\
Register a subject's scalar image (average BOLD, average DWI, pCASL control,
...) to the same subject's T1, compose the result with an existing
T1->template transform, and move labels, auxiliary scalar images and a
tensor image between subject space and template space.
"""

EPILOG = """\
Example:
  intermodality-registration -d 3 -i avgBold.nii.gz -r t1.nii.gz -x t1BrainProb.nii.gz \\
      -w t1ToTemplate -t 3 -o output/bold -a cbf.nii.gz -l templateLabels.nii.gz
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intermodality-registration",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument("-d", dest="dimensionality", default="3", help="image dimension: 2 or 3 (default 3)")
    parser.add_argument("-i", dest="subject_image", help="subject scalar image to register to the T1")
    parser.add_argument("-r", dest="t1_image", help="subject T1 image (fixed)")
    parser.add_argument("-x", dest="t1_mask", help="T1 brain probability mask")
    parser.add_argument("-w", dest="template_transform_prefix", help="prefix of the T1->template transform")
    parser.add_argument(
        "-t",
        dest="transform_class",
        default="1",
        help="0=rigid, 1=affine, 2=rigid+small_def, 3=affine+small_def (default 1)",
    )
    parser.add_argument("-o", dest="output_prefix", help="output prefix")
    parser.add_argument("-l", dest="label_image", help="template-space label image")
    parser.add_argument(
        "-a",
        dest="auxiliary_images",
        action="append",
        default=[],
        help="auxiliary scalar image in subject space (repeatable)",
    )
    parser.add_argument("-b", dest="tensor_image", help="diffusion tensor image in subject space")
    parser.add_argument("-T", dest="template_image", help="template image defining the output grid")
    parser.add_argument(
        "-k",
        dest="keep_intermediates",
        type=int,
        choices=(0, 1),
        default=0,
        help="keep temporary files (default 0)",
    )
    parser.add_argument("-j", dest="max_workers", type=int, default=1, help="parallel resampling jobs")
    parser.add_argument("--time-budget", type=float, default=None, help="wall-clock budget in seconds")
    parser.add_argument("--threads", type=int, default=None, help="ITK threads for external tools")
    parser.add_argument(
        "--resampler",
        choices=("ants", "simpleitk"),
        default="ants",
        help="resampling backend (default ants)",
    )
    parser.add_argument("--config", dest="settings_file", help="YAML file with registration settings")
    parser.add_argument("--qc", dest="write_qc", action="store_true", help="write a QC figure")
    parser.add_argument("--log-level", default="INFO", help="logging level (default INFO)")
    parser.add_argument("-h", "--help", action="store_true", help="show this help and exit")
    return parser


_REQUIRED = (
    ("-i", "subject_image"),
    ("-r", "t1_image"),
    ("-x", "t1_mask"),
    ("-w", "template_transform_prefix"),
    ("-o", "output_prefix"),
)


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()

    if "-h" in argv or "--help" in argv:
        parser.print_help(sys.stderr)
        return 0
    if len(argv) < 3:
        parser.print_help(sys.stderr)
        return 1

    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code == 0 else 1

    configure_logging(args.log_level)

    try:
        missing = [flag for flag, name in _REQUIRED if not getattr(args, name)]
        if missing:
            raise ConfigurationError(f"missing required option(s): {', '.join(missing)}")
        config = build_pipeline_config(
            dimensionality=args.dimensionality,
            subject_image=args.subject_image,
            t1_image=args.t1_image,
            t1_mask=args.t1_mask,
            template_transform_prefix=args.template_transform_prefix,
            output_prefix=args.output_prefix,
            transform_class=args.transform_class,
            label_image=args.label_image,
            auxiliary_images=args.auxiliary_images,
            tensor_image=args.tensor_image,
            template_image=args.template_image,
            settings_file=args.settings_file,
            keep_intermediates=bool(args.keep_intermediates),
            max_workers=args.max_workers,
            time_budget=args.time_budget,
            threads=args.threads,
            resampler=args.resampler,
            write_qc=args.write_qc,
        )
        result = run_pipeline(config)
    except PipelineError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f" Error:  {exc}", file=sys.stderr)
        return 1

    if result.failed_count:
        print(
            f" Error:  {result.failed_count} output(s) failed; see {result.summary_path}",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
