import random
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from p1bulkconsole.client import UserOperationClient
from p1bulkconsole.errors import AuthError, OperationInProgressError
from p1bulkconsole.mapper import recordIdentifier
from p1bulkconsole.models import OperationKind, OperationRequest, OperationResult, OperationState, ResultKind
from p1bulkconsole.orchestrator import BatchOrchestrator, OperationRegistry, cancelledMessage, newOperationId


class FakeClient:
    def __init__(self, delay=0.0, results=None):
        self.delay = delay
        self.results = results or {}
        self.calls = []
        self.callsLock = threading.Lock()

    def perform(self, operationKind, record, p1At, p1Environment, index=0):
        with self.callsLock:
            self.calls.append(index)
        if self.delay:
            time.sleep(random.uniform(0, self.delay))
        identifier = recordIdentifier(record, index)
        if identifier in self.results:
            return self.results[identifier]
        return OperationResult.success(identifier, operationKind, "ok")


def users(count):
    return [{"username": f"user{number}", "populationId": "pop-1"} for number in range(1, count + 1)]


def make_request(records, operationKind=OperationKind.CREATE):
    return OperationRequest(operationKind, records, "env-1", "client-1", "secret-value")


def make_orchestrator(client, tokenCache=None, channel=None, **kwargs):
    if tokenCache is None:
        tokenCache = MagicMock()
        tokenCache.getToken.return_value = "token"
    kwargs.setdefault("batchPause", 0)
    kwargs.setdefault("sleep", MagicMock())
    return BatchOrchestrator(tokenCache, client, channel or MagicMock(), **kwargs)


def published_events(channel):
    return [publishCall.args[1] for publishCall in channel.publish.call_args_list]


def test_new_operation_id():
    operationId = newOperationId(OperationKind.MODIFY)

    prefix, milliseconds, suffix = operationId.split("_")
    assert prefix == "modify"
    assert milliseconds.isdigit()
    assert len(suffix) == 9


def test_results_keep_input_order():
    channel = MagicMock()
    orchestrator = make_orchestrator(FakeClient(delay=0.01), channel=channel, batchSize=4, maxWorkers=4)

    operationRun = orchestrator.run(make_request(users(10)))

    assert operationRun.state == OperationState.COMPLETED
    assert [result.identifier for result in operationRun.results] == [f"user{number}" for number in range(1, 11)]
    assert [result["row"] for result in operationRun.resultDicts()] == list(range(1, 11))


def test_timeout_on_one_record_is_isolated(response_factory):
    session = MagicMock()

    def request(method, url, **kwargs):
        if kwargs["json"]["username"] == "user2":
            raise requests.exceptions.Timeout("slow")
        return response_factory(201, {"id": kwargs["json"]["username"]})

    session.request.side_effect = request
    channel = MagicMock()
    orchestrator = make_orchestrator(UserOperationClient(session, sleep=MagicMock()), channel=channel)

    operationRun = orchestrator.run(make_request(users(3)))

    assert operationRun.summary.successCount == 2
    assert operationRun.summary.errorCount == 1
    assert operationRun.results[1].kind == ResultKind.ERROR
    assert "timed out" in operationRun.results[1].message
    events = published_events(channel)
    assert events[-1]["type"] == "complete"
    assert events[-1]["successCount"] == 2
    assert events[-1]["errorCount"] == 1


def test_progress_events_are_monotonic_and_match_summary():
    channel = MagicMock()
    client = FakeClient(delay=0.01, results={"user3": OperationResult.error("user3", "failed"), "user5": OperationResult.skipped("user5", "exists")})
    orchestrator = make_orchestrator(client, channel=channel, batchSize=3, maxWorkers=3)

    operationRun = orchestrator.run(make_request(users(7)))

    events = published_events(channel)
    progress = [event for event in events if event["type"] == "progress"]
    assert progress[0]["message"] == "Getting authentication token..."
    currents = [event["current"] for event in progress]
    assert currents == sorted(currents)
    assert currents[-1] == 7
    complete = events[-1]
    assert complete["type"] == "complete"
    assert complete["total"] == operationRun.summary.total == 7
    assert complete["successCount"] == operationRun.summary.successCount == 5
    assert complete["errorCount"] == operationRun.summary.errorCount == 1
    assert complete["skippedCount"] == operationRun.summary.skippedCount == 1
    assert progress[-1]["successSoFar"] == 5


def test_invalid_rows_become_error_results():
    client = FakeClient()
    orchestrator = make_orchestrator(client)

    operationRun = orchestrator.run(make_request([{"title": "no identifier"}, {"username": "jdoe"}, "not a row"]))

    assert operationRun.results[0].kind == ResultKind.ERROR
    assert operationRun.results[0].message == "Invalid record: missing identifier"
    assert operationRun.results[1].kind == ResultKind.SUCCESS
    assert operationRun.results[2].kind == ResultKind.ERROR
    assert client.calls == [1]


def test_empty_request_completes():
    channel = MagicMock()
    orchestrator = make_orchestrator(FakeClient(), channel=channel)

    operationRun = orchestrator.run(make_request([]))

    assert operationRun.state == OperationState.COMPLETED
    assert operationRun.summary.total == 0
    assert published_events(channel)[-1]["type"] == "complete"


def test_second_run_of_same_kind_is_rejected():
    started = threading.Event()
    release = threading.Event()
    client = MagicMock()

    def perform(operationKind, record, p1At, p1Environment, index=0):
        started.set()
        release.wait(5)
        return OperationResult.success(recordIdentifier(record, index), operationKind, "ok")

    client.perform.side_effect = perform
    orchestrator = make_orchestrator(client)
    firstRun = {}
    thread = threading.Thread(target=lambda: firstRun.update(run=orchestrator.run(make_request(users(1)))))
    thread.start()
    assert started.wait(5)

    with pytest.raises(OperationInProgressError):
        orchestrator.run(make_request(users(2)))

    release.set()
    thread.join(5)
    assert client.perform.call_count == 1
    assert firstRun["run"].state == OperationState.COMPLETED
    assert orchestrator.isRunning(OperationKind.CREATE) is False


def test_different_kinds_may_run_together():
    orchestrator = make_orchestrator(FakeClient())
    orchestrator.claim(OperationKind.CREATE)

    operationRun = orchestrator.run(make_request([{"userId": "abc"}], OperationKind.DELETE))

    assert operationRun.state == OperationState.COMPLETED
    assert orchestrator.isRunning(OperationKind.CREATE) is True


def test_auth_failure_fails_the_run():
    tokenCache = MagicMock()
    tokenCache.getToken.side_effect = AuthError("PingOne API error (401)", status=401)
    channel = MagicMock()
    client = FakeClient()
    orchestrator = make_orchestrator(client, tokenCache=tokenCache, channel=channel)

    with pytest.raises(AuthError):
        orchestrator.run(make_request(users(2)), operationId="create_1_abc")

    assert client.calls == []
    assert published_events(channel)[-1] == {"type": "error", "message": "Authentication failed: PingOne API error (401)"}
    assert orchestrator.isRunning(OperationKind.CREATE) is False


def test_auth_failure_between_batches_stops_the_run():
    tokenCache = MagicMock()
    tokenCache.getToken.side_effect = ["token", AuthError("PingOne API error (401)", status=401)]
    channel = MagicMock()
    orchestrator = make_orchestrator(FakeClient(), tokenCache=tokenCache, channel=channel, batchSize=1)

    operationRun = orchestrator.run(make_request(users(3)))

    assert operationRun.state == OperationState.FAILED
    assert [result.kind for result in operationRun.results] == [ResultKind.SUCCESS, ResultKind.ERROR, ResultKind.ERROR]
    assert operationRun.results[2].message.startswith("Not processed: Authentication failed")
    assert published_events(channel)[-1]["type"] == "error"


def test_cancel_between_batches():
    cancelEvent = threading.Event()
    client = MagicMock()

    def perform(operationKind, record, p1At, p1Environment, index=0):
        # The user cancels while the first batch is in flight
        cancelEvent.set()
        return OperationResult.success(record["username"], operationKind, "ok")

    client.perform.side_effect = perform
    channel = MagicMock()
    orchestrator = make_orchestrator(client, channel=channel, batchSize=2)

    operationRun = orchestrator.run(make_request(users(6)), cancelEvent=cancelEvent)

    assert operationRun.state == OperationState.FAILED
    assert operationRun.errorMessage == cancelledMessage
    assert len(operationRun.results) == 6
    assert [result.kind for result in operationRun.results[0:2]] == [ResultKind.SUCCESS, ResultKind.SUCCESS]
    assert all(result.kind == ResultKind.SKIPPED for result in operationRun.results[2:])
    assert operationRun.summary.skippedCount == 4
    assert published_events(channel)[-1] == {"type": "error", "message": cancelledMessage}


def test_rate_limited_batch_backs_off():
    sleep = MagicMock()
    client = FakeClient(results={"user1": OperationResult.error("user1", "Rate limited", rateLimited=True)})
    orchestrator = make_orchestrator(client, batchSize=1, batchPause=0.5, sleep=sleep)

    orchestrator.run(make_request(users(3)))

    assert [sleepCall.args[0] for sleepCall in sleep.call_args_list] == [1, 0.5]


def wait_until_finished(operationRun, timeout=5):
    deadline = time.monotonic() + timeout
    while not operationRun.finished and time.monotonic() < deadline:
        time.sleep(0.01)
    return operationRun.finished


def test_registry_runs_in_background():
    orchestrator = make_orchestrator(FakeClient())
    registry = OperationRegistry(orchestrator)

    operationRun = registry.start(make_request(users(3)), operationId="create_1_abcdefghi")

    assert registry.get("create_1_abcdefghi") is operationRun
    assert wait_until_finished(operationRun)
    assert operationRun.toDict()["summary"]["successCount"] == 3


def test_registry_wait_returns_finished_run():
    registry = OperationRegistry(make_orchestrator(FakeClient()))

    operationRun = registry.start(make_request(users(2)), wait=True)

    assert operationRun.finished
    assert operationRun.toDict()["processed"] == 2


def test_registry_rejects_busy_kind():
    orchestrator = make_orchestrator(FakeClient())
    orchestrator.claim(OperationKind.MODIFY)
    registry = OperationRegistry(orchestrator)

    with pytest.raises(OperationInProgressError):
        registry.start(make_request([{"userId": "abc"}], OperationKind.MODIFY))


def test_registry_cancel_unknown_operation():
    registry = OperationRegistry(make_orchestrator(FakeClient()))

    assert registry.cancel("missing") is None


def test_registry_prunes_finished_runs():
    registry = OperationRegistry(make_orchestrator(FakeClient()), keepFinished=2)

    for number in range(4):
        registry.start(make_request(users(1)), operationId=f"create_{number}", wait=True)
    registry.start(make_request(users(1)), operationId="create_last", wait=True)

    assert registry.get("create_0") is None
    assert registry.get("create_last") is not None


def test_rerunning_create_for_existing_users_skips_every_time(response_factory):
    session = MagicMock()
    session.request.return_value = response_factory(409, {"message": "User already exists"})
    orchestrator = make_orchestrator(UserOperationClient(session, sleep=MagicMock()), batchSize=2)

    for attempt in range(2):
        operationRun = orchestrator.run(make_request(users(3)))

        assert operationRun.state == OperationState.COMPLETED
        assert [result.kind for result in operationRun.results] == [ResultKind.SKIPPED] * 3
        assert all(result.message == "User already exists" for result in operationRun.results)
        assert operationRun.summary.skippedCount == 3
        assert operationRun.summary.successCount == 0
    assert session.request.call_count == 6


def test_registry_background_start_reports_auth_failure():
    tokenCache = MagicMock()
    tokenCache.getToken.side_effect = AuthError("PingOne API error (401)", status=401)
    client = FakeClient()
    orchestrator = make_orchestrator(client, tokenCache=tokenCache)
    registry = OperationRegistry(orchestrator)

    with pytest.raises(AuthError):
        registry.start(make_request(users(2)), operationId="create_5_abcdefghi")

    operationRun = registry.get("create_5_abcdefghi")
    assert operationRun.state == OperationState.FAILED
    assert operationRun.errorMessage == "Authentication failed: PingOne API error (401)"
    assert orchestrator.isRunning(OperationKind.CREATE) is False
    assert client.calls == []


def test_registry_background_start_hands_token_to_the_run():
    tokenCache = MagicMock()
    tokenCache.getToken.return_value = "token"
    client = MagicMock()
    client.perform.side_effect = lambda operationKind, record, p1At, p1Environment, index=0: OperationResult.success(record["username"], operationKind, p1At)
    registry = OperationRegistry(make_orchestrator(client, tokenCache=tokenCache))

    operationRun = registry.start(make_request(users(1)))

    assert wait_until_finished(operationRun)
    assert operationRun.results[0].message == "token"
    tokenCache.getToken.assert_called_once()
