"""Tests for the application layer and CLI entry point."""

import base64
import json
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import promptforge
from promptforge import __main__ as cli
from promptforge.config import DEFAULT_CONFIG, merge_dicts
from promptforge.media import MediaResult
from promptforge.models import IdentityProfile
from promptforge.orchestrator import BatchState
from promptforge.promptforge import (
    GenerationJob,
    apply_job,
    build_session,
    generate,
    load_image,
    run,
    write_media,
)
from promptforge.session import Session
from promptforge.storage import MemoryStore


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / 'subject.jpg'
    path.write_bytes(b'fake-jpeg')
    return path


@pytest.fixture
def app_config(tmp_path):
    return merge_dicts(DEFAULT_CONFIG, {'storage': {'path': str(tmp_path / 'state.yaml')}})


@pytest.fixture
def backend():
    mock = MagicMock()
    mock.generate_prompts = AsyncMock(
        side_effect=lambda directive: [f'plain prompt {i}' for i in range(directive.expected_count)])
    mock.synthesize_media = AsyncMock(return_value=MediaResult(ok=True, b64_data=base64.b64encode(b'png').decode()))
    mock.sanitize = AsyncMock(side_effect=lambda text: text)
    return mock


# ============================================================================
# Application Layer Tests
# ============================================================================

def test_package_metadata():
    """Test the package author and version attributes."""
    assert promptforge.__author__ == 'PromptForge Contributors'
    assert promptforge.__version__ == '0.1.0'
    assert promptforge.config.__author__ == promptforge.__author__


def test_load_image(image_file):
    """Test reading an image file as a data URL."""
    data_url = load_image(str(image_file))

    assert data_url.startswith('data:image/jpeg;base64,')
    assert base64.b64decode(data_url.split(',', 1)[1]) == b'fake-jpeg'


def test_build_session_uses_configured_store(app_config):
    """Test that the session persists to the configured path."""
    session = build_session(app_config)
    session.identity.body_description = 'tall'
    session.persist()

    assert build_session(app_config).identity.body_description == 'tall'


def test_apply_job(image_file):
    """Test copying job inputs onto a session."""
    session = Session(store=MemoryStore())
    job = GenerationJob(
        task_type='ugc',
        total_target=20,
        safety_mode='nsfw',
        platform='tiktok',
        aesthetic='polished',
        description='petite frame',
        headshot=str(image_file),
    )

    apply_job(session, job)

    assert session.task_type == 'ugc'
    assert session.target_total == 20
    assert session.safety_mode == 'nsfw'
    assert session.ugc_settings.platform == 'tiktok'
    assert session.identity.body_description == 'petite frame'
    assert session.headshot.startswith('data:image/jpeg;base64,')


def test_apply_job_fresh_clears_subject():
    """Test that a fresh job drops the stored subject."""
    session = Session(store=MemoryStore())
    session.identity = IdentityProfile(name='Old', body_description='old body')

    apply_job(session, GenerationJob(task_type='ugc', keep_subject=False))

    assert session.identity.is_empty()


def test_write_media(tmp_path):
    """Test writing inline images and URL lists."""
    results = {
        'a': MediaResult(ok=True, b64_data=base64.b64encode(b'png-bytes').decode()),
        'b': MediaResult(ok=True, url='https://cdn/b.png'),
        'c': MediaResult.failure('flagged'),
    }

    written = write_media(results, tmp_path / 'media')

    assert written == 2
    assert (tmp_path / 'media' / 'a.png').read_bytes() == b'png-bytes'
    assert (tmp_path / 'media' / 'urls.txt').read_text(encoding='utf-8') == 'b\thttps://cdn/b.png\n'
    assert not (tmp_path / 'media' / 'c.png').exists()


@pytest.mark.asyncio
async def test_generate_with_injected_backend(app_config, backend):
    """Test a full UGC run against a mocked backend."""
    session = build_session(app_config)
    job = GenerationJob(task_type='ugc', total_target=12, synthesize=True)
    apply_job(session, job)

    report = await generate(app_config, session, job, backend=backend)

    assert report.state == BatchState.COMPLETE
    assert len(session.prompts) == 12
    assert len(report.media) == 12
    assert build_session(app_config).task_type == 'ugc'


def test_run_exports_json(app_config, backend, tmp_path):
    """Test the synchronous entry point end to end."""
    output = tmp_path / 'prompts.json'
    job = GenerationJob(task_type='generic', total_target=3, description='tall', output=str(output))

    with patch('promptforge.promptforge.create_backend', return_value=backend):
        report = run(job=job, config_dict=app_config)

    assert report.completed
    exported = json.loads(output.read_text(encoding='utf-8'))
    assert [item['generationMeta']['category'] for item in exported] == ['UGC LIFESTYLE'] * 3


def test_run_reports_missing_key(app_config, monkeypatch):
    """Test that a missing API key aborts without a report."""
    monkeypatch.delenv('GEMINI_API_KEY', raising=False)
    job = GenerationJob(task_type='ugc', total_target=3)

    assert run(job=job, config_dict=app_config) is None


# ============================================================================
# CLI Tests
# ============================================================================

def test_cli_manifest(capsys):
    """Test printing a manifest."""
    with patch.object(sys, 'argv', ['promptforge', 'manifest', '--task', 'product', '--total', '25',
                                    '--start', '20']):
        cli.main()

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 5
    assert lines[0] == 'Item 1: PRODUCT AD (Optimized Ad Composition). Metadata: 21/25'


def test_cli_manifest_json(capsys):
    """Test JSON manifest output."""
    with patch.object(sys, 'argv', ['promptforge', 'manifest', '--total', '50', '--count', '2', '--json']):
        cli.main()

    slots = json.loads(capsys.readouterr().out)
    assert slots[0]['category'] == 'HEADSHOT'
    assert slots[0]['label'] == 'Left 1/4 View'
    assert slots[1]['absoluteIndex'] == 1


def test_cli_manifest_invalid(capsys):
    """Test an out-of-range manifest request."""
    with patch.object(sys, 'argv', ['promptforge', 'manifest', '--total', '5', '--start', '4', '--count', '3']):
        with pytest.raises(SystemExit) as exc:
            cli.main()

    assert exc.value.code == 2
    assert 'exceeds total_target' in capsys.readouterr().err


def test_cli_generate_builds_job():
    """Test that generate flags map onto a GenerationJob."""
    argv = ['promptforge', 'generate', '--task', 'ugc', '--total', '20', '--platform', 'instagram',
            '--media', '--set', 'chunk=5', '-o', 'out.json']
    report = MagicMock(completed=True)
    report.summary.return_value = 'complete'

    with patch.object(sys, 'argv', argv), patch.object(cli, 'run', return_value=report) as mock_run:
        cli.main()

    kwargs = mock_run.call_args.kwargs
    assert kwargs['job'].task_type == 'ugc'
    assert kwargs['job'].total_target == 20
    assert kwargs['job'].platform == 'instagram'
    assert kwargs['job'].synthesize
    assert kwargs['job'].output == 'out.json'
    assert kwargs['config_overrides'] == {'generation': {'chunk_size': 5}}


def test_cli_generate_failure_exit_code(capsys):
    """Test that a failed run exits non-zero."""
    report = MagicMock(completed=False, error='No prompts generated by the AI.')

    with patch.object(sys, 'argv', ['promptforge', 'generate']), patch.object(cli, 'run', return_value=report):
        with pytest.raises(SystemExit) as exc:
            cli.main()

    assert exc.value.code == 1
    assert 'No prompts generated by the AI.' in capsys.readouterr().err


def test_cli_history(tmp_path, capsys):
    """Test listing saved subjects."""
    state = tmp_path / 'state.yaml'
    session = build_session({'storage': {'path': str(state)}})
    session.save_to_history(IdentityProfile(name='Ava', body_description='athletic build'))

    with patch.object(sys, 'argv', ['promptforge', 'history', '--set', f'storage.path={state}']):
        cli.main()

    out = capsys.readouterr().out
    assert 'Ava' in out
    assert 'athletic build' in out
