# PingOne Bulk Console - Logging
# Last Update: October 19, 2026

import logging
import os

logFormat = logging.Formatter("%(asctime)s - %(message)s")

infoLogFile = "P1BulkConsole.log"
failureLogFile = "P1BulkConsoleFailuresDetail.log"

infoLogger = logging.getLogger("mainLog")
infoLogger.setLevel(logging.INFO)

detailedFailureLogger = logging.getLogger("dFLog")
detailedFailureLogger.setLevel(logging.ERROR)

logState = {"directory": ".", "configured": False}


def setupLogging(logDirectory="."):
    #######
    # Attach the file handlers to the info and failure loggers
    #######

    if logState["configured"]:
        return

    os.makedirs(logDirectory, exist_ok=True)
    logState["directory"] = logDirectory

    # Setup info logging
    handler = logging.FileHandler(os.path.join(logDirectory, infoLogFile))
    handler.setFormatter(logFormat)
    infoLogger.addHandler(handler)

    # Setup error logging
    handler = logging.FileHandler(os.path.join(logDirectory, failureLogFile))
    handler.setFormatter(logFormat)
    detailedFailureLogger.addHandler(handler)

    logState["configured"] = True


def maskId(value):
    # Environment and client ids are only ever logged truncated
    if not value:
        return ""
    return value[0:8] + "..."


def getLogFilePath():
    return os.path.join(logState["directory"], infoLogFile)


def readLogContent():
    #######
    # Read the info log for display or export
    #######

    logPath = getLogFilePath()
    if not os.path.isfile(logPath):
        return ""
    with open(logPath, "r", encoding="utf-8") as logFile:
        return logFile.read()


def clearLogFile():
    #######
    # Truncate the info log, returns False when there is no log file yet
    #######

    logPath = getLogFilePath()
    if not os.path.isfile(logPath):
        return False
    for handler in infoLogger.handlers:
        handler.flush()
    with open(logPath, "w", encoding="utf-8"):
        pass
    infoLogger.info(f"Log file cleared.")
    return True


def logClientEntry(entry):
    #######
    # Record a log entry sent by a console or browser client
    #######

    level = str(entry.get("level", "info")).lower()
    message = entry.get("message", "")
    source = entry.get("source", "client")

    if level == "error":
        infoLogger.error(f"CLIENT ERROR ({source}): {message}")
        if entry.get("detail"):
            detailedFailureLogger.error(f"CLIENT ERROR ({source}) detail: {entry['detail']}")
    elif level == "warning" or level == "warn":
        infoLogger.warning(f"CLIENT WARNING ({source}): {message}")
    else:
        infoLogger.info(f"CLIENT ({source}): {message}")
