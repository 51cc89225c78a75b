# PingOne Bulk Console - Data Models
# Last Update: October 19, 2026

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OperationKind(Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"

    @property
    def successLabel(self):
        return successLabels[self]

    @property
    def label(self):
        return operationLabels[self]


successLabels = {
    OperationKind.CREATE: "imported",
    OperationKind.MODIFY: "modified",
    OperationKind.DELETE: "deleted",
}

operationLabels = {
    OperationKind.CREATE: "Import",
    OperationKind.MODIFY: "Modify",
    OperationKind.DELETE: "Delete",
}


class ResultKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class OperationState(Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self):
        return self in (OperationState.COMPLETED, OperationState.FAILED)


@dataclass
class OperationRequest:
    """One bulk import/modify/delete submission."""
    operationKind: OperationKind
    records: List[Dict[str, Any]]
    environmentId: str
    clientId: str
    clientSecret: str = field(repr=False)
    clientType: str = "basic"


@dataclass
class OperationResult:
    """Outcome of one record. kind is the discriminator, successLabel names the success for the operation."""
    identifier: str
    kind: ResultKind
    message: str
    successLabel: str = ""
    userId: Optional[str] = None
    detail: Any = None
    rateLimited: bool = False

    @property
    def status(self):
        if self.kind == ResultKind.SUCCESS:
            return self.successLabel
        return self.kind.value

    def toDict(self):
        result = {
            "identifier": self.identifier,
            "status": self.status,
            "message": self.message,
        }
        if self.userId:
            result["userId"] = self.userId
        if self.detail is not None:
            result["detail"] = self.detail
        return result

    @classmethod
    def success(cls, identifier, operationKind, message, userId=None):
        return cls(identifier, ResultKind.SUCCESS, message, successLabel=operationKind.successLabel, userId=userId)

    @classmethod
    def error(cls, identifier, message, detail=None, userId=None, rateLimited=False):
        return cls(identifier, ResultKind.ERROR, message, userId=userId, detail=detail, rateLimited=rateLimited)

    @classmethod
    def skipped(cls, identifier, message, userId=None, detail=None):
        return cls(identifier, ResultKind.SKIPPED, message, userId=userId, detail=detail)


@dataclass(frozen=True)
class OperationSummary:
    total: int = 0
    successCount: int = 0
    errorCount: int = 0
    skippedCount: int = 0
    durationMs: int = 0

    @classmethod
    def fromResults(cls, results, durationMs):
        successCount = sum(1 for result in results if result.kind == ResultKind.SUCCESS)
        errorCount = sum(1 for result in results if result.kind == ResultKind.ERROR)
        skippedCount = sum(1 for result in results if result.kind == ResultKind.SKIPPED)
        return cls(len(results), successCount, errorCount, skippedCount, durationMs)

    def toDict(self):
        return {
            "total": self.total,
            "successCount": self.successCount,
            "errorCount": self.errorCount,
            "skippedCount": self.skippedCount,
            "durationMs": self.durationMs,
        }


@dataclass
class WorkerToken:
    accessToken: str = field(repr=False)
    expiresAt: int
    createdAt: int
    environmentId: str
    clientId: str
    tokenType: str = "Bearer"

    def usable(self, now, bufferMs):
        return now < self.expiresAt - bufferMs


# Progress events are plain dicts so they serialize straight onto the stream.

def connectedEvent(operationId):
    return {"type": "connected", "operationId": operationId}


def progressEvent(current, total, successSoFar, errorsSoFar, message, skippedSoFar=0):
    return {
        "type": "progress",
        "current": current,
        "total": total,
        "successSoFar": successSoFar,
        "errorsSoFar": errorsSoFar,
        "skippedSoFar": skippedSoFar,
        "message": message,
    }


def completeEvent(summary):
    return {
        "type": "complete",
        "current": summary.total,
        "total": summary.total,
        "successCount": summary.successCount,
        "errorCount": summary.errorCount,
        "skippedCount": summary.skippedCount,
        "durationMs": summary.durationMs,
    }


def errorEvent(message):
    return {"type": "error", "message": message}


terminalEventTypes = ("complete", "error")
