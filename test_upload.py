"""Tests for the upload orchestrator: retries, fallback, circuit breaking and deadlines."""

import asyncio

import httpx
import pytest

from resilient_storage.credentials import CredentialProvider
from resilient_storage.env import Settings
from resilient_storage.models import ErrorKind, RetryConfig, UploadFile, UploadOptions
from resilient_storage.orchestrator import UploadOrchestrator
from resilient_storage.security import RequestSigner
from resilient_storage.storage_services import CrossOriginError, R2Backend

from conftest import R2_HOST, always, supabase_upload_ok

SUPABASE_HOST = "project.supabase.co"


def jpeg(size=10 * 1024):
    return UploadFile(content=b"\xff\xd8\xff" + b"\x00" * (size - 3), mime_type="image/jpeg")


@pytest.fixture
def orchestrator(primary, secondary, breaker, retry_policy, retry_config, sleep, clock):
    return UploadOrchestrator(
        primary,
        secondary,
        breaker,
        retry_policy=retry_policy,
        retry_config=retry_config,
        sleep=sleep,
        clock=clock,
    )


def test_upload_to_primary(orchestrator, router, breaker):
    """A 10 KB JPEG lands on R2 under its bucket prefix on the first attempt."""
    router.on(R2_HOST, always(200))

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.success
    assert result.path == "posts/abc/1.jpg"
    assert result.backend == "primary"
    assert result.public_url == "https://cdn.example.com/posts/abc/1.jpg"

    (request,) = router.calls_to(R2_HOST)
    assert request.method == "PUT"
    assert request.url.path == "/foodshare/posts/abc/1.jpg"
    assert request.headers["authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE0123456789/")
    assert "content-type" in request.headers["authorization"]
    assert request.headers["content-type"] == "image/jpeg"
    assert len(request.content) == 10 * 1024
    assert breaker.snapshot("r2").total_successes == 1


def test_server_errors_exhaust_retries_then_fall_back(orchestrator, router, breaker, sleep):
    router.on(R2_HOST, always(503, "unavailable"))
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.success
    assert result.backend == "secondary"
    assert result.path == "posts/abc/1.jpg"
    assert result.public_url == "https://project.supabase.co/storage/v1/object/public/posts/abc/1.jpg"
    # max_retries=2 means three attempts
    assert len(router.calls_to(R2_HOST)) == 3
    assert len(router.calls_to(SUPABASE_HOST)) == 1
    assert len(sleep.delays) == 2
    assert breaker.snapshot("r2").failure_count == 1


def test_client_error_is_not_retried(orchestrator, router, sleep):
    router.on(R2_HOST, always(403, "SignatureDoesNotMatch"))
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "secondary"
    assert len(router.calls_to(R2_HOST)) == 1
    assert sleep.delays == []


def test_rate_limit_is_retried(orchestrator, router):
    responses = iter([429, 429, 200])
    router.on(R2_HOST, lambda request: httpx.Response(next(responses)))

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "primary"
    assert len(router.calls_to(R2_HOST)) == 3


def test_unconfigured_primary_goes_straight_to_fallback(
    secondary, breaker, retry_policy, retry_config, sleep, router, http_client
):
    settings = Settings(_env_file=None, environment="local")
    primary = R2Backend(CredentialProvider(settings), RequestSigner(), http_client)
    orchestrator = UploadOrchestrator(
        primary, secondary, breaker, retry_policy=retry_policy, retry_config=retry_config, sleep=sleep
    )
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "secondary"
    assert router.calls_to(R2_HOST) == []
    assert breaker.snapshot("r2").failure_count == 0


def test_timeouts_fall_back_and_record_one_failure(
    primary, secondary, breaker, retry_policy, sleep, router
):
    """A primary that never answers times out on every attempt but counts as one failure."""
    async def never_answers(request):
        await asyncio.Event().wait()

    router.on(R2_HOST, never_answers)
    router.on(SUPABASE_HOST, supabase_upload_ok)
    orchestrator = UploadOrchestrator(
        primary,
        secondary,
        breaker,
        retry_policy=retry_policy,
        retry_config=RetryConfig(max_retries=2, base_delay_ms=1, max_delay_ms=5, timeout_ms=30),
        sleep=sleep,
    )

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "secondary"
    assert len(router.calls_to(R2_HOST)) == 3
    assert breaker.snapshot("r2").failure_count == 1


def test_open_circuit_skips_primary(orchestrator, router, breaker):
    for _ in range(3):
        breaker.record_failure("r2")
    router.on(R2_HOST, always(200))
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "secondary"
    assert router.calls_to(R2_HOST) == []


def test_half_open_probe_success_closes_circuit(orchestrator, router, breaker, clock):
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)
    router.on(R2_HOST, always(200))

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "primary"
    assert breaker.snapshot("r2").state.value == "closed"


def test_cross_origin_failure_still_falls_back(orchestrator, router):
    def blocked(request):
        raise CrossOriginError("Failed to fetch")

    router.on(R2_HOST, blocked)
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "secondary"
    assert len(router.calls_to(R2_HOST)) == 1


def test_both_backends_failing_returns_user_message(orchestrator, router, breaker):
    router.on(R2_HOST, always(503))
    router.on(SUPABASE_HOST, always(503))

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert not result.success
    assert result.error_kind == ErrorKind.SERVER
    assert result.retriable
    assert result.message == "Server is temporarily unavailable. Please try again in a moment."
    assert "503" not in result.message
    assert breaker.snapshot("r2").failure_count == 1
    assert breaker.snapshot("supabase").failure_count == 1


def test_validation_failure_makes_no_network_call(orchestrator, router):
    too_big = jpeg(size=6 * 1024 * 1024)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", too_big))

    assert result.error_kind == ErrorKind.VALIDATION
    assert result.message == "File size exceeds maximum allowed (5MB)"
    assert not result.retriable
    assert router.requests == []


def test_validation_rejects_type(orchestrator, router):
    archive = UploadFile(content=b"PK\x03\x04", mime_type="application/zip")

    result = asyncio.run(orchestrator.upload("posts", "a.zip", archive))

    assert result.message == 'File type "application/zip" is not allowed'
    assert router.requests == []


def test_validation_can_be_disabled(orchestrator, router):
    router.on(R2_HOST, always(200))
    archive = UploadFile(content=b"PK\x03\x04", mime_type="application/zip")

    result = asyncio.run(orchestrator.upload("posts", "a.zip", archive, UploadOptions(validate_file=False)))

    assert result.backend == "primary"


def test_per_call_retry_config(orchestrator, router):
    router.on(R2_HOST, always(500))
    router.on(SUPABASE_HOST, supabase_upload_ok)

    options = UploadOptions(retry_config=RetryConfig(max_retries=0, base_delay_ms=1, timeout_ms=1000))
    asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg(), options))

    assert len(router.calls_to(R2_HOST)) == 1


def test_deadline_leaves_budget_for_fallback(orchestrator, router, clock):
    """With a 2s budget the primary gets half; one slow failure exhausts it."""
    def slow_failure(request):
        clock.advance(1)
        return httpx.Response(503)

    router.on(R2_HOST, slow_failure)
    router.on(SUPABASE_HOST, supabase_upload_ok)

    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg(), UploadOptions(deadline_ms=2000)))

    assert result.backend == "secondary"
    assert len(router.calls_to(R2_HOST)) == 1


def test_cancellation_propagates(orchestrator, router):
    async def never_answers(request):
        await asyncio.Event().wait()

    router.on(R2_HOST, never_answers)

    async def scenario():
        task = asyncio.create_task(orchestrator.upload("posts", "abc/1.jpg", jpeg()))
        await asyncio.sleep(0.01)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())


def test_empty_path_is_a_programming_error(orchestrator):
    with pytest.raises(ValueError):
        asyncio.run(orchestrator.upload("posts", "", jpeg()))


def test_cancelled_half_open_probe_releases_its_slot(orchestrator, router, breaker, clock):
    """A probe cancelled mid-flight leaves the circuit able to probe again."""
    for _ in range(3):
        breaker.record_failure("r2")
    clock.advance(1)
    r2_hangs = [True]

    async def r2(request):
        if r2_hangs[0]:
            await asyncio.Event().wait()
        return httpx.Response(200)

    router.on(R2_HOST, r2)

    async def cancelled_upload():
        task = asyncio.create_task(orchestrator.upload("posts", "abc/1.jpg", jpeg()))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancelled_upload())
    assert breaker.snapshot("r2").half_open_probes_used == 0
    assert not breaker.is_open("r2")

    r2_hangs[0] = False
    result = asyncio.run(orchestrator.upload("posts", "abc/1.jpg", jpeg()))

    assert result.backend == "primary"
    assert breaker.snapshot("r2").state.value == "closed"
