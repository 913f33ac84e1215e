"""Tests for the batch orchestrator state machine and retry accounting."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from promptforge.config import DEFAULT_CONFIG
from promptforge.errors import AUTH_ERROR_MESSAGE, InvalidTransition
from promptforge.manifest import generate_manifest
from promptforge.media import MediaResult
from promptforge.models import IdentityProfile
from promptforge.orchestrator import (
    TRANSITIONS,
    BatchOrchestrator,
    BatchState,
    OrchestratorSettings,
    RetryLedger,
)
from promptforge.session import Session
from promptforge.storage import MemoryStore

HEADSHOT = 'data:image/png;base64,SEVBRA=='


def compiled_items(directive, produce=None, prefix='prompt'):
    """Response items for a directive, one per manifest slot by default."""
    count = directive.expected_count if produce is None else produce
    start = compiled_items.counter
    compiled_items.counter += count
    return [
        {
            'generation_data': {
                'final_prompt_string': f'{prefix} {start + i}',
                'setting': f'place {start + i}',
            },
            'tags': ['t'],
        }
        for i in range(count)
    ]


compiled_items.counter = 0


@pytest.fixture(autouse=True)
def reset_counter():
    compiled_items.counter = 0


@pytest.fixture
def session():
    session = Session(store=MemoryStore())
    session.identity = IdentityProfile(name='Ava', body_description='athletic build')
    return session


@pytest.fixture
def backend():
    """Backend whose prompt calls always return a full batch."""
    mock = MagicMock()
    mock.generate_prompts = AsyncMock(side_effect=lambda directive: compiled_items(directive))
    mock.synthesize_media = AsyncMock(side_effect=lambda request: MediaResult(ok=True, b64_data='IMG'))
    mock.sanitize = AsyncMock(side_effect=lambda text: f'sanitized {text}')
    mock.analyze_subject = AsyncMock()
    return mock


def make_orchestrator(backend, session, **settings):
    return BatchOrchestrator(backend, session, OrchestratorSettings(**settings))


# ============================================================================
# Transition Table Tests
# ============================================================================

def test_terminal_states_have_no_exits():
    """Test that terminal states are final."""
    for state in (BatchState.COMPLETE, BatchState.CANCELLED, BatchState.FAILED):
        assert TRANSITIONS[state] == frozenset()


def test_every_state_has_an_entry():
    """Test that the table covers every state."""
    assert set(TRANSITIONS) == set(BatchState)


def test_illegal_transition_raises(backend, session):
    """Test that the table is enforced."""
    orchestrator = make_orchestrator(backend, session)

    with pytest.raises(InvalidTransition, match='idle -> synthesizing_media'):
        orchestrator._transition(BatchState.SYNTHESIZING_MEDIA)


def test_settings_from_config():
    """Test reading run settings from config."""
    settings = OrchestratorSettings.from_config(DEFAULT_CONFIG)

    assert settings.chunk_size == 10
    assert settings.window_items == 25
    assert settings.window_chars == 80
    assert settings.media_timeout == 90.0
    assert settings.resolution == '2k'


# ============================================================================
# Retry Ledger Tests
# ============================================================================

def test_retry_ledger_single_retry():
    """Test that a failure is retried once and then becomes permanent."""
    ledger = RetryLedger()
    ledger.record('a', MediaResult(ok=True))
    ledger.record('b', MediaResult.failure('flagged'))
    ledger.record('c', MediaResult.failure('timeout'))

    assert ledger.has_pending
    assert ledger.take_retry_queue() == ['b', 'c']
    assert not ledger.has_pending

    ledger.record('b', MediaResult(ok=True))
    ledger.record('c', MediaResult.failure('still flagged'))

    assert ledger.succeeded == 2
    assert ledger.retried_count == 2
    assert ledger.permanent_failures == {'c': 'still flagged'}
    assert not ledger.has_pending


def test_retry_ledger_empty_queue():
    """Test that nothing is queued when every item succeeds."""
    ledger = RetryLedger()
    ledger.record('a', MediaResult(ok=True))

    assert ledger.take_retry_queue() == []
    assert ledger.permanent_failures == {}


# ============================================================================
# Run Loop Tests
# ============================================================================

@pytest.mark.asyncio
async def test_run_completes_target(backend, session):
    """Test a 50-item LoRA run in chunks of ten."""
    orchestrator = make_orchestrator(backend, session, chunk_size=10)

    report = await orchestrator.run(total_target=50)

    assert report.state == BatchState.COMPLETE
    assert report.completed
    assert report.generated_count == 50
    assert len(report.batches) == 5
    assert backend.generate_prompts.await_count == 5
    assert session.generated_count == 50

    expected = [slot.meta for slot in generate_manifest('lora', 50, 0, 50)]
    assert [item.generation_meta for item in session.prompts] == expected


@pytest.mark.asyncio
async def test_run_walks_the_state_machine(backend, session):
    """Test the sequence of states for a prompt-only run."""
    orchestrator = make_orchestrator(backend, session, chunk_size=10)

    await orchestrator.run(total_target=10)

    assert [(a.value, b.value) for a, b in orchestrator.transitions] == [
        ('idle', 'requesting_prompts'),
        ('requesting_prompts', 'reconciling_prompts'),
        ('reconciling_prompts', 'idle'),
        ('idle', 'complete'),
    ]


@pytest.mark.asyncio
async def test_run_passes_repetition_window(backend, session):
    """Test that settings from earlier batches are avoided in later ones."""
    orchestrator = make_orchestrator(backend, session, chunk_size=5, window_items=3, window_chars=80)

    await orchestrator.run(total_target=10)

    first = backend.generate_prompts.await_args_list[0].args[0]
    second = backend.generate_prompts.await_args_list[1].args[0]
    assert 'AVOID SETTINGS' not in first.text
    assert 'AVOID SETTINGS: [place 2, place 3, place 4]' in second.text
    assert len(session.repetition) == 10


@pytest.mark.asyncio
async def test_run_under_production_re_requests(backend, session):
    """Test that a short batch is made up by the next one with contiguous indices."""
    calls = iter([8, None, None])
    backend.generate_prompts.side_effect = lambda directive: compiled_items(directive, next(calls))
    orchestrator = make_orchestrator(backend, session, chunk_size=10)

    report = await orchestrator.run(total_target=20)

    assert report.completed
    assert [b.requested for b in report.batches] == [10, 10, 2]
    assert report.batches[0].shortfall == 2
    assert [b.start_count for b in report.batches] == [0, 8, 18]

    expected = [slot.meta for slot in generate_manifest('lora', 20, 0, 20)]
    assert [item.generation_meta for item in session.prompts] == expected


@pytest.mark.asyncio
async def test_run_over_production_drops_extra_items(backend, session):
    """Test that items past the manifest are dropped and every planned slot is requested."""
    backend.generate_prompts.side_effect = lambda directive: compiled_items(directive, directive.expected_count + 2)
    orchestrator = make_orchestrator(backend, session, chunk_size=10)

    report = await orchestrator.run(total_target=20)

    assert report.completed
    assert report.generated_count == 20
    assert len(session.prompts) == 20
    assert [b.start_count for b in report.batches] == [0, 10]
    assert [b.shortfall for b in report.batches] == [-2, -2]

    expected = [slot.meta for slot in generate_manifest('lora', 20, 0, 20)]
    assert [item.generation_meta for item in session.prompts] == expected


@pytest.mark.asyncio
async def test_run_keeps_malformed_items(backend, session):
    """Test that malformed items are stored as text and counted."""
    backend.generate_prompts.side_effect = lambda directive: ['not json {', *compiled_items(directive, 4)]
    orchestrator = make_orchestrator(backend, session, chunk_size=5)

    report = await orchestrator.run(total_target=5)

    assert report.completed
    assert report.unparsed_count == 1
    assert session.prompts[0].text == 'not json {'


@pytest.mark.asyncio
async def test_run_empty_batch_fails(backend, session):
    """Test that a batch with no items ends the run."""
    backend.generate_prompts.side_effect = lambda directive: []
    orchestrator = make_orchestrator(backend, session)

    report = await orchestrator.run(total_target=10)

    assert report.state == BatchState.FAILED
    assert report.error == 'No prompts generated by the AI.'
    assert session.prompts == []
    assert orchestrator.transitions[-1] == (BatchState.RECONCILING_PROMPTS, BatchState.FAILED)


@pytest.mark.asyncio
async def test_run_auth_error_aborts(backend, session):
    """Test that auth/quota errors fail the run with the auth flag."""
    backend.generate_prompts.side_effect = RuntimeError('429 RESOURCE_EXHAUSTED')
    orchestrator = make_orchestrator(backend, session)

    report = await orchestrator.run(total_target=10)

    assert report.state == BatchState.FAILED
    assert report.auth_error
    assert report.error == AUTH_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_run_prompt_timeout(backend, session):
    """Test that a slow prompt call times out and fails the run."""
    async def slow(directive):
        await asyncio.sleep(1)
        return compiled_items(directive)

    backend.generate_prompts.side_effect = slow
    orchestrator = make_orchestrator(backend, session, prompt_timeout=0.01)

    report = await orchestrator.run(total_target=10)

    assert report.state == BatchState.FAILED
    assert 'timed out' in report.error
    assert not report.auth_error


@pytest.mark.asyncio
async def test_run_cancel_between_batches(backend, session):
    """Test cooperative cancellation after the first batch."""
    cancel = asyncio.Event()
    orchestrator = make_orchestrator(backend, session, chunk_size=10)

    report = await orchestrator.run(total_target=50, cancel_event=cancel, on_batch=lambda outcome: cancel.set())

    assert report.state == BatchState.CANCELLED
    assert report.generated_count == 10
    assert backend.generate_prompts.await_count == 1


@pytest.mark.asyncio
async def test_run_cancel_before_start(backend, session):
    """Test that a pre-set cancel event makes no calls."""
    cancel = asyncio.Event()
    cancel.set()
    orchestrator = make_orchestrator(backend, session)

    report = await orchestrator.run(total_target=10, cancel_event=cancel)

    assert report.state == BatchState.CANCELLED
    backend.generate_prompts.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_requires_ready_session(backend):
    """Test that validation errors fail the run before any call."""
    orchestrator = make_orchestrator(backend, Session(store=MemoryStore()))

    report = await orchestrator.run(total_target=10)

    assert report.state == BatchState.FAILED
    assert report.error == 'Subject Analysis required for every task except UGC.'
    backend.generate_prompts.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_can_be_repeated(backend, session):
    """Test that a finished orchestrator can start a new run."""
    orchestrator = make_orchestrator(backend, session, chunk_size=10)
    await orchestrator.run(total_target=10)

    report = await orchestrator.run(total_target=20)

    assert report.completed
    assert report.generated_count == 20
    assert len(report.batches) == 1


@pytest.mark.asyncio
async def test_run_bad_reference_image_fails_and_recovers(backend, session):
    """Test that an unreadable reference image fails the run without wedging the orchestrator."""
    session.headshot = 'data:image/png,not-base64'
    orchestrator = make_orchestrator(backend, session, chunk_size=5)

    report = await orchestrator.run(total_target=5)

    assert report.state == BatchState.FAILED
    assert report.error == 'Invalid image data format'
    assert orchestrator.state == BatchState.FAILED
    backend.generate_prompts.assert_not_awaited()

    session.headshot = 'SEVBRA=='
    report = await orchestrator.run(total_target=5)

    assert report.completed
    assert report.generated_count == 5


# ============================================================================
# Media Synthesis Tests
# ============================================================================

@pytest.mark.asyncio
async def test_media_all_succeed(backend, session):
    """Test media fan-out with no failures."""
    session.headshot = HEADSHOT
    orchestrator = make_orchestrator(backend, session, chunk_size=5)

    report = await orchestrator.run(total_target=5, synthesize=True)

    assert report.completed
    assert len(report.media) == 5
    assert report.media_failures == 0
    assert backend.synthesize_media.await_count == 5
    backend.sanitize.assert_not_awaited()

    request = backend.synthesize_media.await_args_list[0].args[0]
    assert request.reference_images == [HEADSHOT]
    assert request.prompt == 'prompt 0'
    assert (BatchState.SYNTHESIZING_MEDIA, BatchState.IDLE) in orchestrator.transitions


@pytest.mark.asyncio
async def test_media_retry_with_sanitized_prompt(backend, session):
    """Test that failed items are sanitized and retried exactly once."""
    def synthesize(request):
        if request.prompt.startswith('sanitized'):
            return MediaResult(ok=True, url='https://cdn/ok.png')
        if request.prompt in ('prompt 1', 'prompt 3'):
            return MediaResult.failure('Content flagged')
        return MediaResult(ok=True, b64_data='IMG')

    backend.synthesize_media.side_effect = synthesize
    orchestrator = make_orchestrator(backend, session, chunk_size=5)

    report = await orchestrator.run(total_target=5, synthesize=True)

    assert report.completed
    assert backend.synthesize_media.await_count == 7
    assert backend.sanitize.await_count == 2
    assert report.batches[0].media_retried == 2
    assert report.batches[0].media_failed == 0
    assert report.batches[0].media_succeeded == 5
    assert (BatchState.SYNTHESIZING_MEDIA, BatchState.RETRYING_FAILURES) in orchestrator.transitions


@pytest.mark.asyncio
async def test_media_permanent_failure(backend, session):
    """Test that an item failing its retry is counted and the run continues."""
    def synthesize(request):
        if 'prompt 2' in request.prompt:
            return MediaResult.failure('Content flagged')
        return MediaResult(ok=True, b64_data='IMG')

    backend.synthesize_media.side_effect = synthesize
    orchestrator = make_orchestrator(backend, session, chunk_size=5)

    report = await orchestrator.run(total_target=10, synthesize=True)

    assert report.completed
    assert report.media_failures == 1
    assert len(report.batches) == 2
    assert backend.synthesize_media.await_count == 11


@pytest.mark.asyncio
async def test_media_timeout_is_an_item_failure(backend, session):
    """Test that a slow media call fails only its item."""
    async def synthesize(request):
        if request.prompt == 'prompt 0':
            await asyncio.sleep(1)
        return MediaResult(ok=True, b64_data='IMG')

    backend.synthesize_media.side_effect = synthesize
    orchestrator = make_orchestrator(backend, session, chunk_size=2, media_timeout=0.05)

    report = await orchestrator.run(total_target=2, synthesize=True)

    assert report.completed
    assert report.media_failures == 0
    assert backend.sanitize.await_count == 1


@pytest.mark.asyncio
async def test_media_sanitizer_failure_keeps_original(backend, session):
    """Test that a broken sanitizer does not stop the retry."""
    attempts = []

    def synthesize(request):
        attempts.append(request.prompt)
        return MediaResult.failure('flagged') if len(attempts) == 1 else MediaResult(ok=True, b64_data='IMG')

    backend.synthesize_media.side_effect = synthesize
    backend.sanitize.side_effect = ConnectionError('down')
    orchestrator = make_orchestrator(backend, session, chunk_size=1)

    report = await orchestrator.run(total_target=1, synthesize=True)

    assert report.completed
    assert attempts == ['prompt 0', 'prompt 0']
    assert report.media_failures == 0


@pytest.mark.asyncio
async def test_media_product_uses_product_images(backend, session):
    """Test that product runs send product images as references."""
    product = 'data:image/png;base64,UFJPRA=='
    session.task_type = 'product'
    session.product_images = [product]
    orchestrator = make_orchestrator(backend, session, chunk_size=2)

    await orchestrator.run(total_target=2, synthesize=True)

    request = backend.synthesize_media.await_args_list[0].args[0]
    assert request.reference_images == [product]


# ============================================================================
# Subject Analysis Tests
# ============================================================================

@pytest.mark.asyncio
async def test_analyze_subject_applies_identity(backend):
    """Test that analysis results become the session subject."""
    session = Session(store=MemoryStore())
    session.headshot = HEADSHOT
    backend.analyze_subject.return_value = {'identity_profile': {'uid': 'Kai', 'body_stack': 'broad shoulders'}}
    orchestrator = make_orchestrator(backend, session)

    await orchestrator.analyze_subject()

    backend.analyze_subject.assert_awaited_once_with(HEADSHOT, None)
    assert session.identity.name == 'Kai'
    assert session.identity.body_description == 'broad shoulders'
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_analyze_subject_requires_images(backend):
    """Test analysis without reference images."""
    orchestrator = make_orchestrator(backend, Session(store=MemoryStore()))

    with pytest.raises(ValueError):
        await orchestrator.analyze_subject()
