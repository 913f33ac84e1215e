"""PromptForge application layer - wires config, session, backend and orchestrator.

Features:
    - Config loading with profiles and --set overrides
    - Persistent session (draft + subject history) in a YAML state file
    - Optional subject analysis before generation
    - Batched prompt generation with optional media synthesis
    - JSON export of the generated dataset and media files on disk

Usage:
    # Programmatic usage
    from promptforge import GenerationJob, run
    report = run(job=GenerationJob(task_type='ugc', total_target=20, output='prompts.json'))

    # CLI usage
    python -m promptforge generate --task ugc --total 20 --output prompts.json

Author:
    PromptForge Contributors
"""

import asyncio
import base64
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from . import config
from .backends import create_backend
from .errors import PromptForgeError, describe_error
from .media import MediaResult, to_data_url
from .models import SAFETY_SFW, TASK_LORA, UGCSettings
from .orchestrator import BatchOrchestrator, BatchReport, OrchestratorSettings
from .session import Session
from .storage import FileStore

__author__ = 'PromptForge Contributors'
__all__ = [
    'GenerationJob',
    'setup_logging',
    'load_image',
    'build_session',
    'apply_job',
    'write_media',
    'generate',
    'run',
    'main',
]

logger = logging.getLogger('promptforge')


@dataclass
class GenerationJob:
    """Inputs for one generation run.

    Attributes:
        task_type: lora, product, generic or ugc.
        total_target: Dataset size (session default when None).
        safety_mode: sfw or nsfw.
        platform: UGC platform.
        aesthetic: candid or polished.
        custom_instruction: Extra UGC instruction.
        description: Body description; overrides the stored subject's.
        headshot: Path to a subject headshot.
        bodyshot: Path to a subject body shot.
        product_images: Paths to product images.
        analyze: Run subject analysis on the subject images first.
        synthesize: Synthesize media for every prompt.
        keep_subject: Keep the stored subject when starting the run.
        output: JSON export path.
        media_dir: Directory for synthesized images.
    """
    task_type: str = TASK_LORA
    total_target: Optional[int] = None
    safety_mode: str = SAFETY_SFW
    platform: str = 'general'
    aesthetic: str = 'candid'
    custom_instruction: str = ''
    description: Optional[str] = None
    headshot: Optional[str] = None
    bodyshot: Optional[str] = None
    product_images: list[str] = field(default_factory=list)
    analyze: bool = False
    synthesize: bool = False
    keep_subject: bool = True
    output: Optional[str] = None
    media_dir: Optional[str] = None


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = '%(asctime)s [%(levelname)s] %(message)s'
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=log_level, format=log_format, handlers=log_handlers)

    # SDK request logging is noisy at DEBUG
    for noisy in ('httpx', 'httpcore', 'google_genai'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def load_image(path: str) -> str:
    """Read an image file as a data URL."""
    image_path = Path(path).expanduser()
    mime_type = mimetypes.guess_type(image_path.name)[0] or 'image/png'
    data = base64.b64encode(image_path.read_bytes()).decode('ascii')
    return to_data_url(data, mime_type)


def build_session(loaded_config: dict[str, Any]) -> Session:
    """Create a session backed by the configured state file and load it."""
    storage_path = (loaded_config.get('storage') or {}).get('path', '~/.promptforge/state.yaml')
    session = Session(
        store=FileStore(Path(storage_path)),
        history_limit=int((loaded_config.get('history') or {}).get('limit', 10)),
        task_switch_policy=(loaded_config.get('repetition') or {}).get('task_switch', 'carry'),
    )
    session.load()
    return session


def apply_job(session: Session, job: GenerationJob) -> None:
    """Copy job inputs onto the session."""
    if not job.keep_subject:
        session.reset(keep_subject=False)

    session.switch_task(job.task_type)
    session.safety_mode = job.safety_mode
    session.ugc_settings = UGCSettings(
        platform=job.platform,
        custom_instruction=job.custom_instruction,
        aesthetic=job.aesthetic,
    )
    if job.total_target:
        session.target_total = job.total_target
    if job.description is not None:
        session.identity.body_description = job.description
    if job.headshot:
        session.headshot = load_image(job.headshot)
    if job.bodyshot:
        session.bodyshot = load_image(job.bodyshot)
    if job.product_images:
        session.product_images = [load_image(p) for p in job.product_images]


def write_media(results: dict[str, MediaResult], media_dir: Path) -> int:
    """Write inline media to ``<media_dir>/<item_id>.png``; URLs go to urls.txt.

    Returns:
        Number of results written.
    """
    media_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    urls = []
    for item_id, result in results.items():
        if not result.ok:
            continue
        if result.b64_data:
            (media_dir / f'{item_id}.png').write_bytes(base64.b64decode(result.b64_data))
            written += 1
        elif result.url:
            urls.append(f'{item_id}\t{result.url}')
            written += 1
    if urls:
        (media_dir / 'urls.txt').write_text('\n'.join(urls) + '\n', encoding='utf-8')
    return written


async def generate(
    loaded_config: dict[str, Any],
    session: Session,
    job: GenerationJob,
    backend: Any = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> BatchReport:
    """Run analysis (optional) and the batch loop for a prepared session."""
    if backend is None:
        backend = create_backend(
            loaded_config,
            gemini_key=config.get_api_key(loaded_config, 'gemini'),
            wavespeed_key=config.get_api_key(loaded_config, 'wavespeed'),
        )

    orchestrator = BatchOrchestrator(backend, session, OrchestratorSettings.from_config(loaded_config))
    if job.analyze:
        await orchestrator.analyze_subject()

    report = await orchestrator.run(
        total_target=job.total_target or session.target_total,
        cancel_event=cancel_event,
        synthesize=job.synthesize,
    )
    session.persist()
    return report


def run(
    job: Optional[GenerationJob] = None,
    config_dict: Optional[dict[str, Any]] = None,
    config_path: Optional[str] = None,
    profile: Optional[str] = None,
    config_overrides: Optional[dict[str, Any]] = None,
    save_overrides: bool = False,
    debug: bool = False,
    log_file: Optional[str] = None,
) -> Optional[BatchReport]:
    """Run a generation job.

    Can be called programmatically or via CLI.

    Args:
        job: What to generate (defaults to GenerationJob()).
        config_dict: Optional config dictionary (highest priority)
        config_path: Optional path to config file
        profile: Optional profile name to load
        config_overrides: Optional dictionary of config overrides
        save_overrides: If True, save CLI overrides back to config file
        debug: Enable debug logging
        log_file: Optional path to log file

    Returns:
        The run report, or None if the run never started.
    """
    if config_dict is None:
        loaded_config, _ = config.load_config(
            config_path=config_path,
            profile=profile,
            overrides=config_overrides,
            save_overrides=save_overrides,
        )
    else:
        loaded_config = config_dict
        if config_overrides:
            loaded_config = config.merge_dicts(loaded_config, config_overrides)

    setup_logging(debug, log_file)
    job = job or GenerationJob()

    logger.info('=' * 60)
    logger.info(f'PromptForge starting: task={job.task_type}, media={job.synthesize}')
    logger.info('=' * 60)

    try:
        session = build_session(loaded_config)
        apply_job(session, job)
        report = asyncio.run(generate(loaded_config, session, job))
    except KeyboardInterrupt:
        logger.info('Interrupted')
        return None
    except (PromptForgeError, ValueError, OSError) as e:
        logger.error(f'Run aborted: {describe_error(e)}')
        return None

    logger.info(report.summary())

    if job.output and session.prompts:
        Path(job.output).write_text(session.export_json(), encoding='utf-8')
        logger.info(f'Exported {len(session.prompts)} prompt(s) to {job.output}')

    if job.media_dir and report.media:
        written = write_media(report.media, Path(job.media_dir))
        logger.info(f'Wrote {written} media file(s) to {job.media_dir}')

    return report


def main() -> None:
    """CLI entry point - delegates to __main__.main()."""
    from . import __main__
    __main__.main()


if __name__ == '__main__':
    main()
