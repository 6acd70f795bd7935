"""
Command-line interface for the model converter.

Parses arguments into ConvertParams and runs one conversion. Parsing never
exits the process: problems come back as values in a ParseResult and
main() decides what to print and which exit code to return.
"""

import sys
import argparse
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from gguf.constants import GGMLQuantizationType

from . import __version__, config
from .console import ConsoleLogger, print_completion
from .errors import ConversionError
from .params import ConvertParams, default_output_path
from .pipelines import convert_model
from .precision import PRECISION_TOKENS, resolve_type_token

# (flag, destination) for every option that takes a precision token
TYPE_OPTIONS = (
    ('--outtype', 'output_type'),
    ('--vae-outtype', 'vae_output_type'),
    ('--clip-l-outtype', 'clip_l_output_type'),
    ('--clip-g-outtype', 'clip_g_output_type'),
    ('--t5xxl-outtype', 't5xxl_output_type'),
)


@dataclass
class ParseResult:
    """
    Outcome of parsing the command line.

    Exactly one of params/error is set unless show_help is True.
    """
    params: Optional[ConvertParams] = None
    error: Optional[str] = None
    unknown: List[str] = field(default_factory=list)
    show_help: bool = False


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports problems instead of exiting."""

    def error(self, message):
        raise argparse.ArgumentError(None, message)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser (also used to print usage/help)."""
    tokens = ', '.join(PRECISION_TOKENS)
    parser = _ArgumentParser(
        prog='model-converter',
        description='Model Converter ' + __version__ + ' - Convert diffusion models to a single GGUF container',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
        exit_on_error=False,
        epilog=f"""
Precision types: {tokens}

Examples:
  # Convert a single checkpoint to fp16
  python run.py model.safetensors

  # Convert a pipeline directory, quantizing the backbone to q4_0
  python run.py ./stable-diffusion-xl-base-1.0 --outtype q4_0 --vae-outtype fp16

  # Flux with separately downloaded parts
  python run.py ./FLUX.1-dev --diffusion-model flux1-dev.safetensors --vae-model ae.safetensors
        """
    )

    parser.add_argument('-h', '--help', action='store_true', help='Show this help message and exit')
    parser.add_argument('model', nargs='?', metavar='MODEL', help='Model file or pipeline directory')

    parser.add_argument('--diffusion-model', help='Diffusion model file (skips the vae under MODEL unless --vae-model is given)')
    parser.add_argument('--vae-model', help='VAE model file')
    parser.add_argument('--clip-l-model', help='CLIP-L text encoder file')
    parser.add_argument('--clip-g-model', help='CLIP-G text encoder file')
    parser.add_argument('--t5xxl-model', help='T5-XXL text encoder file')
    parser.add_argument('--outfile', help='Output path (default: <MODEL name>-<OUTTYPE>.gguf)')

    parser.add_argument('--outtype', dest='output_type', default=config.DEFAULT_OUTPUT_TYPE,
                        help=f'Output precision (default: {config.DEFAULT_OUTPUT_TYPE})')
    parser.add_argument('--vae-outtype', dest='vae_output_type', help='VAE precision (default: --outtype)')
    parser.add_argument('--clip-l-outtype', dest='clip_l_output_type', help='CLIP-L precision (default: --outtype)')
    parser.add_argument('--clip-g-outtype', dest='clip_g_output_type', help='CLIP-G precision (default: --outtype)')
    parser.add_argument('--t5xxl-outtype', dest='t5xxl_output_type', help='T5-XXL precision (default: --outtype)')

    return parser


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def parse_params(argv: Sequence[str]) -> ParseResult:
    """
    Parse command-line arguments into conversion parameters.

    Unknown arguments are collected and parsing carries on; a flag with no
    value or an unknown precision token stops parsing with an error.

    Example:
        >>> parse_params(['foo/bar.safetensors']).params.output_path
        PosixPath('bar-F16.gguf')
    """
    parser = build_parser()
    try:
        args, unknown = parser.parse_known_args(list(argv))
    except argparse.ArgumentError as e:
        if e.argument_name and 'expected one argument' in e.message:
            return ParseResult(error=f"Missing argument: {e.argument_name}")
        return ParseResult(error=str(e))

    result = ParseResult(unknown=list(unknown))
    if args.help:
        result.show_help = True
        return result

    types = {}
    for flag, dest in TYPE_OPTIONS:
        token = getattr(args, dest)
        if token is None:
            types[dest] = None
            continue
        qtype = resolve_type_token(token)
        if qtype is None:
            result.error = f"Invalid argument: {flag}"
            return result
        types[dest] = qtype

    if not args.model:
        result.error = "the following arguments are required: MODEL"
        return result

    output_type: GGMLQuantizationType = types.pop('output_type')
    model_path = Path(args.model)
    output_path = Path(args.outfile) if args.outfile else default_output_path(model_path, output_type)

    result.params = ConvertParams(
        model_path=model_path,
        output_path=output_path,
        output_type=output_type,
        diffusion_model_path=_optional_path(args.diffusion_model),
        vae_path=_optional_path(args.vae_model),
        clip_l_path=_optional_path(args.clip_l_model),
        clip_g_path=_optional_path(args.clip_g_model),
        t5xxl_path=_optional_path(args.t5xxl_model),
        **types
    )
    return result


def print_params(logger: ConsoleLogger, params: ConvertParams) -> None:
    """Show what is about to be converted."""
    logger.info(f"Model: {params.model_path}")
    logger.info(f"Output: {params.output_path}")
    logger.info(f"Output type: {params.output_type.name}")

    explicit = [
        ('Diffusion model', params.diffusion_model_path),
        ('VAE', params.vae_path),
        ('CLIP-L', params.clip_l_path),
        ('CLIP-G', params.clip_g_path),
        ('T5-XXL', params.t5xxl_path),
    ]
    for label, path in explicit:
        if path is not None:
            logger.debug(f"{label}: {path}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Process exit code: 0 on success, 1 on any error
    """
    logger = ConsoleLogger(verbose=config.is_verbose())
    result = parse_params(sys.argv[1:] if argv is None else argv)

    for arg in result.unknown:
        logger.warning(f"Unknown argument: {arg}")

    if result.show_help:
        build_parser().print_help()
        return 0

    if result.error is not None:
        logger.error(result.error)
        logger.console.print(build_parser().format_usage(), markup=False, highlight=False)
        return 1

    params = result.params
    if not params.model_path.exists():
        logger.error(f"Model path not found: {params.model_path}")
        return 1

    logger.header(f"Model Converter v{__version__}")
    print_params(logger, params)

    start_time = time.time()
    try:
        output_hash = convert_model(params, logger)
    except ConversionError as e:
        logger.error(str(e))
        return 1
    elapsed = time.time() - start_time

    size_mb = params.output_path.stat().st_size / (1024 * 1024)
    print_completion(logger, str(params.output_path), size_mb, output_hash, elapsed)
    return 0


if __name__ == '__main__':
    sys.exit(main())
