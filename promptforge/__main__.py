"""CLI entry point for PromptForge.

This module provides a subcommand-based CLI around the prompt pipeline.

Usage:
    python -m promptforge manifest --task lora --total 50 --count 10   # Print a slot plan
    python -m promptforge generate --task ugc --total 20 -o out.json   # Run a generation job
    python -m promptforge history                                      # List saved subjects

Author:
    PromptForge Contributors
"""

import argparse
import json
import logging
import sys
from datetime import datetime

from . import config
from .manifest import format_manifest, generate_manifest, remaining_slots
from .models import AESTHETIC_CANDID, AESTHETIC_POLISHED, PLATFORMS, SAFETY_MODES, SAFETY_SFW, TASK_LORA, TASK_TYPES
from .promptforge import GenerationJob, build_session, run, setup_logging

__author__ = 'PromptForge Contributors'
__all__ = ['main']

logger = logging.getLogger('promptforge')


def _overrides(args: argparse.Namespace) -> dict | None:
    if not args.set:
        return None
    overrides = config.parse_set_string(args.set)
    logger.debug(f'Parsed --set: {overrides}')
    return overrides or None


def cmd_manifest(args: argparse.Namespace) -> None:
    """Print the slot plan for one batch."""
    count = args.count if args.count is not None else remaining_slots(args.total, args.start)
    try:
        slots = generate_manifest(args.task, args.total, args.start, count)
    except ValueError as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(2)

    if args.json:
        print(json.dumps([{
            'sequenceIndex': slot.sequence_index,
            'absoluteIndex': slot.absolute_index,
            **slot.meta.to_dict(),
        } for slot in slots], indent=2))
    else:
        print(format_manifest(slots))


def cmd_generate(args: argparse.Namespace) -> None:
    """Run a generation job."""
    job = GenerationJob(
        task_type=args.task,
        total_target=args.total,
        safety_mode=args.safety,
        platform=args.platform,
        aesthetic=args.aesthetic,
        custom_instruction=args.instruction or '',
        description=args.description,
        headshot=args.headshot,
        bodyshot=args.bodyshot,
        product_images=args.product or [],
        analyze=args.analyze,
        synthesize=args.media,
        keep_subject=not args.fresh,
        output=args.output,
        media_dir=args.media_dir,
    )

    report = run(
        job=job,
        config_path=args.config,
        profile=args.profile,
        config_overrides=_overrides(args),
        save_overrides=args.save,
        debug=args.debug,
        log_file=args.log_file,
    )

    if report is None or not report.completed:
        if report is not None and report.error:
            print(f'Error: {report.error}', file=sys.stderr)
        sys.exit(1)
    print(report.summary())


def cmd_history(args: argparse.Namespace) -> None:
    """List saved subjects, newest first."""
    loaded_config, _ = config.load_config(
        config_path=args.config, profile=args.profile, overrides=_overrides(args))
    setup_logging(args.debug, args.log_file)
    session = build_session(loaded_config)

    if not session.history:
        print('No saved subjects')
        return

    for entry in session.history:
        saved = datetime.fromtimestamp(entry.timestamp / 1000).strftime('%Y-%m-%d %H:%M')
        description = entry.body_description
        if len(description) > 60:
            description = description[:57] + '...'
        print(f'{entry.id}  {saved}  {entry.identity.name or "Subject"}  {description}')


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', type=str, help='Path to config file (JSON or YAML)')
    parser.add_argument('--profile', type=str, help='Load config profile')
    parser.add_argument('--set', type=str, metavar='KEY=VALUE ...',
                        help='Set config values (e.g. "timeout=90s chunk=5 media.provider=wavespeed")')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--log-file', type=str, help='Write logs to file')


def main() -> None:
    """Parse CLI arguments and execute subcommand."""
    parser = argparse.ArgumentParser(
        description='PromptForge - prompt manifest compiler for image datasets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest='command', help='Subcommands')

    # MANIFEST subcommand
    manifest_parser = subparsers.add_parser('manifest', help='Print the slot plan for a batch')
    manifest_parser.add_argument('--task', choices=TASK_TYPES, default=TASK_LORA, help='Task type')
    manifest_parser.add_argument('--total', type=int, default=50, help='Dataset size')
    manifest_parser.add_argument('--start', type=int, default=0, help='Items already produced')
    manifest_parser.add_argument('--count', type=int, help='Slots in this batch (default: all remaining)')
    manifest_parser.add_argument('--json', action='store_true', help='Print slots as JSON')
    manifest_parser.set_defaults(func=cmd_manifest)

    # GENERATE subcommand
    generate_parser = subparsers.add_parser('generate', help='Generate a prompt dataset')
    _add_config_arguments(generate_parser)
    generate_parser.add_argument('--save', action='store_true', help='Save --set changes to config')
    generate_parser.add_argument('--task', choices=TASK_TYPES, default=TASK_LORA, help='Task type')
    generate_parser.add_argument('--total', type=int, help='Dataset size (default: 50)')
    generate_parser.add_argument('--safety', choices=SAFETY_MODES, default=SAFETY_SFW, help='Safety mode')
    generate_parser.add_argument('--platform', choices=PLATFORMS, default='general', help='UGC platform')
    generate_parser.add_argument('--aesthetic', choices=[AESTHETIC_CANDID, AESTHETIC_POLISHED],
                                 default=AESTHETIC_CANDID, help='UGC aesthetic')
    generate_parser.add_argument('--instruction', type=str, help='Custom UGC instruction')
    generate_parser.add_argument('--description', type=str, help='Subject body description')
    generate_parser.add_argument('--headshot', type=str, help='Subject headshot image')
    generate_parser.add_argument('--bodyshot', type=str, help='Subject body shot image')
    generate_parser.add_argument('--product', type=str, action='append', help='Product image (repeatable)')
    generate_parser.add_argument('--analyze', action='store_true', help='Analyze subject images first')
    generate_parser.add_argument('--media', action='store_true', help='Synthesize an image per prompt')
    generate_parser.add_argument('--media-dir', type=str, help='Directory for synthesized images')
    generate_parser.add_argument('--fresh', action='store_true', help='Ignore the stored subject')
    generate_parser.add_argument('-o', '--output', type=str, help='Write prompts to a JSON file')
    generate_parser.set_defaults(func=cmd_generate)

    # HISTORY subcommand
    history_parser = subparsers.add_parser('history', help='List saved subjects')
    _add_config_arguments(history_parser)
    history_parser.set_defaults(func=cmd_history)

    args = parser.parse_args()

    if hasattr(args, 'func'):
        args.func(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
