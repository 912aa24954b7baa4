"""
Unit tests for the job poller
Termination, timeouts, fan-in groups and cancellation
"""
import asyncio

import pytest
from unittest.mock import Mock

from conftest import ScriptedJobClient
from songstudio.core.result import ErrorKind, Result
from songstudio.jobs.base import JobStatus
from songstudio.jobs.poller import CancellationToken, JobPoller, PollState


def succeeded(url="https://provider.test/out.wav"):
    return JobStatus.succeeded({"audio": url})


@pytest.mark.unit
class TestPollUntilDone:
    """Single-job polling"""

    @pytest.mark.asyncio
    async def test_succeeds_after_n_processing_polls(self):
        """N processing responses then success means exactly N+1 polls"""
        client = ScriptedJobClient(scripts=[[JobStatus.processing()] * 3 + [succeeded()]])
        handle = (await client.start()).data
        on_succeeded = Mock()
        on_failed = Mock()

        outcome = await JobPoller(client, interval=0, max_attempts=10).poll_until_done(
            handle, on_succeeded, on_failed
        )

        assert outcome.state == PollState.SUCCEEDED
        assert outcome.attempts == 4
        assert client.poll_counts[handle.job_id] == 4
        on_succeeded.assert_called_once_with({"audio": "https://provider.test/out.wav"})
        on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_times_out_after_exactly_max_attempts(self):
        """A job that never terminates is polled max_attempts times, never more"""
        client = ScriptedJobClient(scripts=[[JobStatus.processing()]])
        handle = (await client.start()).data
        on_succeeded = Mock()
        on_failed = Mock()

        outcome = await JobPoller(client, interval=0, max_attempts=7).poll_until_done(
            handle, on_succeeded, on_failed
        )

        assert outcome.state == PollState.FAILED
        assert client.poll_counts[handle.job_id] == 7
        on_succeeded.assert_not_called()
        on_failed.assert_called_once()
        failure = on_failed.call_args.args[0]
        assert failure.kind == ErrorKind.TIMEOUT
        assert failure.attempts == 7

    @pytest.mark.asyncio
    async def test_provider_failure_is_terminal(self):
        client = ScriptedJobClient(scripts=[[JobStatus.processing(), JobStatus.failed("GENERATE_AUDIO_FAILED")]])
        handle = (await client.start()).data
        on_failed = Mock()

        outcome = await JobPoller(client, interval=0, max_attempts=10).poll_until_done(
            handle, Mock(), on_failed
        )

        assert outcome.state == PollState.FAILED
        assert client.poll_counts[handle.job_id] == 2
        failure = on_failed.call_args.args[0]
        assert failure.kind == ErrorKind.PROVIDER
        assert failure.error == "GENERATE_AUDIO_FAILED"

    @pytest.mark.asyncio
    async def test_transient_errors_count_as_attempts(self):
        client = ScriptedJobClient(scripts=[[
            Result.err("connection reset", ErrorKind.TRANSIENT),
            JobStatus.processing(),
            succeeded(),
        ]])
        handle = (await client.start()).data

        outcome = await JobPoller(client, interval=0, max_attempts=10).poll_until_done(
            handle, Mock(), Mock()
        )

        assert outcome.succeeded
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_too_many_consecutive_transient_errors_fail(self):
        client = ScriptedJobClient(scripts=[[Result.err("gateway timeout", ErrorKind.TRANSIENT)]])
        handle = (await client.start()).data
        on_failed = Mock()

        outcome = await JobPoller(
            client, interval=0, max_attempts=20, max_consecutive_errors=2
        ).poll_until_done(handle, Mock(), on_failed)

        assert outcome.state == PollState.FAILED
        assert client.poll_counts[handle.job_id] == 3
        assert on_failed.call_args.args[0].kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_non_transient_poll_error_fails_immediately(self):
        client = ScriptedJobClient(scripts=[[Result.err("suno check status error: 401", ErrorKind.PROVIDER)]])
        handle = (await client.start()).data
        on_failed = Mock()

        await JobPoller(client, interval=0, max_attempts=20).poll_until_done(handle, Mock(), on_failed)

        assert client.poll_counts[handle.job_id] == 1
        assert on_failed.call_args.args[0].kind == ErrorKind.PROVIDER

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        client = ScriptedJobClient(scripts=[[succeeded()]])
        handle = (await client.start()).data
        received = []

        async def on_succeeded(outputs):
            await asyncio.sleep(0)
            received.append(outputs)

        await JobPoller(client, interval=0, max_attempts=3).poll_until_done(handle, on_succeeded, Mock())

        assert received == [{"audio": "https://provider.test/out.wav"}]


@pytest.mark.unit
class TestPollGroup:
    """Fan-out/fan-in over independent jobs"""

    @pytest.mark.asyncio
    async def test_continuation_fires_once_after_slowest_job(self):
        """A succeeds on poll 2, B on poll 5; the continuation sees both, once"""
        client = ScriptedJobClient(scripts=[
            [JobStatus.processing(), succeeded("https://provider.test/intro.wav")],
            [JobStatus.processing()] * 4 + [succeeded("https://provider.test/outro.wav")],
        ])
        intro = (await client.start(part="intro")).data
        outro = (await client.start(part="outro")).data

        calls = []

        def on_all_succeeded(outputs):
            # Snapshot poll counts at the moment the barrier opens
            calls.append((outputs, dict(client.poll_counts)))

        outcome = await JobPoller(client, interval=0, max_attempts=10).poll_group(
            {"intro": intro, "outro": outro}, on_all_succeeded, Mock()
        )

        assert outcome.succeeded
        assert outcome.attempts == 5
        assert len(calls) == 1

        outputs, counts = calls[0]
        assert outputs == {
            "intro": {"audio": "https://provider.test/intro.wav"},
            "outro": {"audio": "https://provider.test/outro.wav"},
        }
        assert counts[outro.job_id] == 5
        # Latched jobs are not polled again
        assert counts[intro.job_id] == 2

    @pytest.mark.asyncio
    async def test_first_failure_ends_the_group(self):
        client = ScriptedJobClient(scripts=[
            [JobStatus.processing()],
            [JobStatus.processing(), JobStatus.failed("CREATE_TASK_FAILED")],
        ])
        first = (await client.start()).data
        second = (await client.start()).data
        on_all_succeeded = Mock()
        on_failed = Mock()

        outcome = await JobPoller(client, interval=0, max_attempts=10).poll_group(
            {"intro": first, "outro": second}, on_all_succeeded, on_failed
        )

        assert outcome.state == PollState.FAILED
        on_all_succeeded.assert_not_called()
        on_failed.assert_called_once()
        assert on_failed.call_args.args[0].key == "outro"
        assert client.poll_counts[first.job_id] == 2

    @pytest.mark.asyncio
    async def test_group_timeout_names_pending_job(self):
        client = ScriptedJobClient(scripts=[[succeeded()], [JobStatus.processing()]])
        done = (await client.start()).data
        stuck = (await client.start()).data
        on_failed = Mock()

        outcome = await JobPoller(client, interval=0, max_attempts=4).poll_group(
            {"a": done, "b": stuck}, Mock(), on_failed
        )

        assert outcome.state == PollState.FAILED
        assert client.poll_counts[stuck.job_id] == 4
        failure = on_failed.call_args.args[0]
        assert failure.kind == ErrorKind.TIMEOUT
        assert failure.key == "b"

    @pytest.mark.asyncio
    async def test_empty_group_succeeds_immediately(self):
        on_all_succeeded = Mock()
        outcome = await JobPoller(ScriptedJobClient(), interval=0).poll_group({}, on_all_succeeded, Mock())

        assert outcome.succeeded
        on_all_succeeded.assert_called_once_with({})


@pytest.mark.unit
class TestCancellation:
    """Cooperative cancellation through CancellationToken"""

    @pytest.mark.asyncio
    async def test_cancel_during_wait_stops_polling(self):
        client = ScriptedJobClient(scripts=[[JobStatus.processing()]])
        handle = (await client.start()).data
        token = CancellationToken()
        on_succeeded = Mock()
        on_failed = Mock()

        task = asyncio.ensure_future(
            JobPoller(client, interval=30, max_attempts=10).poll_until_done(
                handle, on_succeeded, on_failed, token=token
            )
        )
        await asyncio.sleep(0.01)
        token.cancel()
        outcome = await asyncio.wait_for(task, timeout=1)

        assert outcome.state == PollState.CANCELLED
        assert client.poll_counts[handle.job_id] == 1
        on_succeeded.assert_not_called()
        on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_never_polls(self):
        client = ScriptedJobClient()
        handle = (await client.start()).data
        token = CancellationToken()
        token.cancel()

        outcome = await JobPoller(client, interval=0).poll_until_done(handle, Mock(), Mock(), token=token)

        assert outcome.state == PollState.CANCELLED
        assert client.poll_counts[handle.job_id] == 0

    @pytest.mark.asyncio
    async def test_cancelled_group_fires_no_callbacks(self):
        client = ScriptedJobClient(scripts=[[JobStatus.processing()]])
        handles = {"intro": (await client.start()).data, "outro": (await client.start()).data}
        token = CancellationToken()
        on_all_succeeded = Mock()
        on_failed = Mock()

        task = asyncio.ensure_future(
            JobPoller(client, interval=30).poll_group(handles, on_all_succeeded, on_failed, token=token)
        )
        await asyncio.sleep(0.01)
        token.cancel()
        outcome = await asyncio.wait_for(task, timeout=1)

        assert outcome.state == PollState.CANCELLED
        on_all_succeeded.assert_not_called()
        on_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_token_sleep_reports_cancellation(self):
        token = CancellationToken()
        assert await token.sleep(0) is False

        token.cancel()
        assert token.cancelled
        assert await token.sleep(5) is True
