# PingOne Bulk Console - Batch Orchestrator
# Last Update: October 19, 2026

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed

from p1bulkconsole.errors import AuthError, MappingError, OperationInProgressError
from p1bulkconsole.logs import detailedFailureLogger, infoLogger, maskId
from p1bulkconsole.mapper import mapRecord, recordIdentifier
from p1bulkconsole.models import (
    OperationKind,
    OperationResult,
    OperationState,
    OperationSummary,
    ResultKind,
    completeEvent,
    errorEvent,
    progressEvent,
)
from p1bulkconsole.tokens import currentTimeMs

cancelledMessage = "Operation cancelled by user"


def newOperationId(operationKind):
    return f"{operationKind.value}_{currentTimeMs()}_{uuid.uuid4().hex[0:9]}"


class OperationRun:
    # *********
    # The in-memory state of one bulk run: its state machine position, ordered results and summary.
    # results[i] stays None until record i has been processed.
    # *********

    def __init__(self, operationId, operationKind, total):
        self.operationId = operationId
        self.operationKind = operationKind
        self.total = total
        self.state = OperationState.IDLE
        self.results = [None] * total
        self.summary = None
        self.errorMessage = None
        self.cancelEvent = threading.Event()
        self.startedAt = currentTimeMs()
        self.finishedAt = None

    @property
    def finished(self):
        return self.state.terminal

    def resultDicts(self):
        resultList = []
        for index, result in enumerate(self.results):
            if result is None:
                continue
            resultDict = result.toDict()
            resultDict["row"] = index + 1
            resultList.append(resultDict)
        return resultList

    def toDict(self, includeResults=True):
        operation = {
            "operationId": self.operationId,
            "operation": self.operationKind.value,
            "state": self.state.value,
            "total": self.total,
            "processed": sum(1 for result in self.results if result is not None),
            "success": self.state == OperationState.COMPLETED,
        }
        if self.summary is not None:
            operation["summary"] = self.summary.toDict()
        if self.errorMessage:
            operation["error"] = self.errorMessage
        if includeResults:
            operation["results"] = self.resultDicts()
        return operation


class BatchOrchestrator:
    # *********
    # Drives one bulk run: Idle -> Authenticating -> Processing -> Finalizing -> Completed | Failed.
    # Records are dispatched in sub-batches on a thread pool, results are written back by input index,
    # and a progress event is published after every completed record.
    # Only one run per operation kind may be active at a time.
    # *********

    def __init__(self, tokenCache, client, channel, batchSize=10, batchPause=0.5, maxWorkers=10, sleep=time.sleep, clock=currentTimeMs):
        self.tokenCache = tokenCache
        self.client = client
        self.channel = channel
        self.batchSize = batchSize
        self.batchPause = batchPause
        self.maxPause = max(batchPause * 8, 8)
        self.maxWorkers = maxWorkers
        self.sleep = sleep
        self.clock = clock
        self.inProgress = {operationKind: False for operationKind in OperationKind}
        self.flagLock = threading.Lock()

    def claim(self, operationKind):
        #######
        # Mark an operation kind as running, rejecting a second run of the same kind
        #######

        with self.flagLock:
            if self.inProgress[operationKind]:
                infoLogger.warning(f"Rejected {operationKind.value} request - an operation of that kind is already in progress.")
                raise OperationInProgressError(operationKind.value)
            self.inProgress[operationKind] = True

    def release(self, operationKind):
        with self.flagLock:
            self.inProgress[operationKind] = False

    def isRunning(self, operationKind):
        with self.flagLock:
            return self.inProgress[operationKind]

    def run(self, operationRequest, operationId=None, cancelEvent=None):
        #######
        # Claim, execute and release one run synchronously
        #######

        operationKind = operationRequest.operationKind
        self.claim(operationKind)
        operationRun = OperationRun(operationId or newOperationId(operationKind), operationKind, len(operationRequest.records))
        if cancelEvent is not None:
            operationRun.cancelEvent = cancelEvent
        return self.execute(operationRequest, operationRun)

    def publish(self, operationRun, event):
        self.channel.publish(operationRun.operationId, event)

    def fail(self, operationRun, message):
        operationRun.state = OperationState.FAILED
        operationRun.errorMessage = message
        operationRun.finishedAt = self.clock()
        self.publish(operationRun, errorEvent(message))

    def authenticate(self, operationRequest, operationRun):
        #######
        # Get the worker token for a run, failing the run when PingOne refuses it
        #######

        operationRun.state = OperationState.AUTHENTICATING
        self.publish(operationRun, progressEvent(0, operationRun.total, 0, 0, "Getting authentication token..."))
        try:
            return self.tokenCache.getToken(operationRequest.environmentId, operationRequest.clientId, operationRequest.clientSecret, operationRequest.clientType)
        except AuthError as e:
            infoLogger.error(f"{operationRequest.operationKind.label} {operationRun.operationId} failed authenticating: {e}")
            self.fail(operationRun, f"Authentication failed: {e}")
            raise

    def execute(self, operationRequest, operationRun, p1At=None):
        #######
        # Run an already claimed operation to a terminal state
        # A token fetched up front is used as is, otherwise the run authenticates first
        # The claim is released however the run ends
        #######

        operationKind = operationRequest.operationKind
        try:
            return self.processOperation(operationRequest, operationRun, p1At)
        except AuthError:
            raise
        except Exception as e:
            infoLogger.error(f"{operationKind.label} {operationRun.operationId} failed: {e}")
            detailedFailureLogger.error(f"{operationKind.label} {operationRun.operationId} failed: {e!r}")
            if not operationRun.finished:
                self.fail(operationRun, f"Operation failed: {e}")
            raise
        finally:
            self.release(operationKind)

    def processOperation(self, operationRequest, operationRun, p1At=None):
        operationKind = operationRequest.operationKind
        records = operationRequest.records
        total = len(records)
        startTime = self.clock()

        infoLogger.info(f"Starting {operationKind.label} {operationRun.operationId}: {total} records, environment {maskId(operationRequest.environmentId)}.")

        if p1At is None:
            p1At = self.authenticate(operationRequest, operationRun)

        # Processing
        operationRun.state = OperationState.PROCESSING
        counts = {ResultKind.SUCCESS: 0, ResultKind.ERROR: 0, ResultKind.SKIPPED: 0}
        current = 0
        stopMessage = None
        pause = self.batchPause

        with ThreadPoolExecutor(max_workers=self.maxWorkers) as executor:
            for batchStart in range(0, total, self.batchSize):
                if operationRun.cancelEvent.is_set():
                    stopMessage = cancelledMessage
                    break

                if batchStart > 0:
                    if pause > 0:
                        self.sleep(pause)
                    # Refresh the token between sub-batches if it went stale during a long run
                    try:
                        p1At = self.tokenCache.getToken(operationRequest.environmentId, operationRequest.clientId, operationRequest.clientSecret, operationRequest.clientType)
                    except AuthError as e:
                        stopMessage = f"Authentication failed: {e}"
                        break

                batchEnd = min(batchStart + self.batchSize, total)
                threads = {}
                for index in range(batchStart, batchEnd):
                    thread = executor.submit(self.processRecord, operationKind, records[index], p1At, operationRequest.environmentId, index)
                    threads[thread] = index

                rateLimited = False
                for thread in as_completed(threads):
                    index = threads[thread]
                    try:
                        result = thread.result()
                    except Exception as e:
                        infoLogger.error(f"Error: Thread generated an exception: {e}")
                        result = OperationResult.error(recordIdentifier(records[index], index), f"Unexpected error: {e}", detail=repr(e))
                    operationRun.results[index] = result
                    counts[result.kind] += 1
                    rateLimited = rateLimited or result.rateLimited
                    current += 1
                    self.publish(operationRun, progressEvent(
                        current,
                        total,
                        counts[ResultKind.SUCCESS],
                        counts[ResultKind.ERROR],
                        f"Processing user {current} of {total}",
                        skippedSoFar=counts[ResultKind.SKIPPED],
                    ))

                if rateLimited:
                    pause = min(max(pause * 2, 1), self.maxPause)
                    infoLogger.warning(f"PingOne rate limit hit - pausing {pause} seconds between batches.")
                else:
                    pause = self.batchPause

                infoLogger.info(f"{operationKind.label} progress {operationRun.operationId}: Processed={current}, Succeeded={counts[ResultKind.SUCCESS]}, Failed={counts[ResultKind.ERROR]}, Skipped={counts[ResultKind.SKIPPED]}")

        # Finalizing
        operationRun.state = OperationState.FINALIZING
        if stopMessage is not None:
            for index in range(total):
                if operationRun.results[index] is None:
                    identifier = recordIdentifier(records[index], index)
                    if stopMessage == cancelledMessage:
                        operationRun.results[index] = OperationResult.skipped(identifier, f"Not processed: {cancelledMessage.lower()}")
                    else:
                        operationRun.results[index] = OperationResult.error(identifier, f"Not processed: {stopMessage}")

        duration = self.clock() - startTime
        operationRun.summary = OperationSummary.fromResults(operationRun.results, duration)
        summary = operationRun.summary

        infoLogger.info(f"{operationKind.label.upper()} TOTALS: Total={summary.total}, Succeeded={summary.successCount}, Failed={summary.errorCount}, Skipped={summary.skippedCount}, Duration={summary.durationMs}ms")

        if stopMessage is not None:
            infoLogger.warning(f"{operationKind.label} {operationRun.operationId} stopped: {stopMessage}")
            self.fail(operationRun, stopMessage)
            return operationRun

        operationRun.state = OperationState.COMPLETED
        operationRun.finishedAt = self.clock()
        self.publish(operationRun, completeEvent(summary))
        return operationRun

    def processRecord(self, operationKind, rawRow, p1At, p1Environment, index):
        #######
        # Map and perform one record, never raising
        #######

        try:
            record = mapRecord(rawRow, acceptUserId=operationKind != OperationKind.CREATE)
        except MappingError as e:
            identifier = recordIdentifier(rawRow, index) if isinstance(rawRow, dict) else f"user-{index}"
            infoLogger.error(f"Invalid record {index + 1} ({identifier}): {e.reason}")
            return OperationResult.error(identifier, f"Invalid record: {e.reason}", detail=rawRow)
        except AttributeError:
            return OperationResult.error(f"user-{index}", "Invalid record: expected a mapping of field names to values", detail=repr(rawRow))
        return self.client.perform(operationKind, record, p1At, p1Environment, index)


class OperationRegistry:
    # *********
    # Keeps every run of this process by operation id so progress can be fetched after the fact.
    # Background runs share one executor, one worker per operation kind.
    # *********

    def __init__(self, orchestrator, keepFinished=50):
        self.orchestrator = orchestrator
        self.keepFinished = keepFinished
        self.operations = {}
        self.registryLock = threading.Lock()
        self.executor = ThreadPoolExecutor(max_workers=len(OperationKind))

    def start(self, operationRequest, operationId=None, wait=False):
        #######
        # Start a run, in the background unless wait is set
        # Raises OperationInProgressError before anything starts when the kind is busy
        #######

        operationKind = operationRequest.operationKind
        operationId = operationId or newOperationId(operationKind)

        with self.registryLock:
            existing = self.operations.get(operationId)
        if existing is not None and not existing.finished:
            raise OperationInProgressError(operationKind.value)

        self.orchestrator.claim(operationKind)
        operationRun = OperationRun(operationId, operationKind, len(operationRequest.records))
        with self.registryLock:
            self.operations[operationId] = operationRun
            self.prune()

        if wait:
            self.orchestrator.execute(operationRequest, operationRun)
            return operationRun

        # Bad credentials are reported to the caller, not to the background run
        try:
            p1At = self.orchestrator.authenticate(operationRequest, operationRun)
        except AuthError:
            self.orchestrator.release(operationKind)
            raise
        except Exception as e:
            self.orchestrator.fail(operationRun, f"Operation failed: {e}")
            self.orchestrator.release(operationKind)
            raise

        self.executor.submit(self.runInBackground, operationRequest, operationRun, p1At)
        return operationRun

    def runInBackground(self, operationRequest, operationRun, p1At=None):
        try:
            self.orchestrator.execute(operationRequest, operationRun, p1At)
        except AuthError as e:
            infoLogger.error(f"Background {operationRun.operationKind.value} {operationRun.operationId} ended: {e}")
        except Exception as e:
            infoLogger.error(f"Background {operationRun.operationKind.value} {operationRun.operationId} ended with an error: {e}")

    def get(self, operationId):
        with self.registryLock:
            return self.operations.get(operationId)

    def cancel(self, operationId):
        #######
        # Ask a run to stop at its next checkpoint
        #######

        operationRun = self.get(operationId)
        if operationRun is None:
            return None
        if not operationRun.finished:
            infoLogger.info(f"Cancel requested for operation {operationId}.")
            operationRun.cancelEvent.set()
        return operationRun

    def prune(self):
        finished = [operationId for operationId, operationRun in self.operations.items() if operationRun.finished]
        while len(finished) > self.keepFinished:
            del self.operations[finished.pop(0)]
