# PingOne Bulk Console - Console Client
# Last Update: October 19, 2026

import json
import os
import threading
import time
from enum import Enum

import pwinput
import requests

from p1bulkconsole import version
from p1bulkconsole.config import readConfigurationFile
from p1bulkconsole.csvfile import csvMetadata, parseCsvText
from p1bulkconsole.errors import ConfigError, MappingError
from p1bulkconsole.logs import infoLogger, setupLogging
from p1bulkconsole.models import OperationKind, terminalEventTypes
from p1bulkconsole.orchestrator import newOperationId
from p1bulkconsole.presenter import debugDetails, exportCsv, exportFilename, paginate, renderPage

settingsKey = "pingoneSettings"

operationPaths = {
    OperationKind.CREATE: "bulk-import",
    OperationKind.MODIFY: "bulk-modify",
    OperationKind.DELETE: "bulk-delete",
}


class ControllerState(Enum):
    READY = "ready"
    SUBMITTING = "submitting"
    LISTENING = "listening"
    DONE = "done"


def readEvents(response):
    #######
    # Turn a text/event-stream response into event dicts
    # Comment lines such as keep-alives are ignored
    #######

    dataLines = []
    for line in response.iter_lines(decode_unicode=True):
        if line is None:
            continue
        if line == "":
            if dataLines:
                yield json.loads("\n".join(dataLines))
                dataLines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            dataLines.append(line[5:].lstrip())
    if dataLines:
        yield json.loads("\n".join(dataLines))


class ProgressView:
    # *********
    # Console progress display: a bar, the success/failed/skipped counters and a step log.
    # Repaints are coalesced so at most one happens per repaintInterval, terminal events always paint.
    # *********

    barWidth = 30

    def __init__(self, total=0, repaintInterval=0.5, clock=time.monotonic, output=print):
        self.total = total
        self.current = 0
        self.success = 0
        self.failed = 0
        self.skipped = 0
        self.message = ""
        self.steps = []
        self.repaintInterval = repaintInterval
        self.clock = clock
        self.output = output
        self.lastPaint = None
        self.paints = 0

    def update(self, event):
        eventType = event.get("type")
        if eventType == "progress":
            self.current = event.get("current", self.current)
            self.total = event.get("total", self.total)
            self.success = event.get("successSoFar", self.success)
            self.failed = event.get("errorsSoFar", self.failed)
            self.skipped = event.get("skippedSoFar", self.skipped)
            self.message = event.get("message", "")
        elif eventType == "complete":
            self.current = event.get("current", self.current)
            self.total = event.get("total", self.total)
            self.success = event.get("successCount", self.success)
            self.failed = event.get("errorCount", self.failed)
            self.skipped = event.get("skippedCount", self.skipped)
            self.message = f"Completed in {event.get('durationMs', 0) / 1000:.1f} seconds"
        elif eventType == "error":
            self.message = f"Error: {event.get('message', 'Operation failed')}"
        else:
            return

        if self.message and (not self.steps or self.steps[-1] != self.message):
            self.steps.append(self.message)

        now = self.clock()
        if eventType in terminalEventTypes or self.lastPaint is None or now - self.lastPaint >= self.repaintInterval:
            self.paint()
            self.lastPaint = now

    def renderBar(self):
        percent = int(self.current * 100 / self.total) if self.total else 0
        filled = int(self.barWidth * percent / 100)
        bar = "#" * filled + "-" * (self.barWidth - filled)
        return f"[{bar}] {self.current}/{self.total} ({percent}%)  Success: {self.success}  Failed: {self.failed}  Skipped: {self.skipped}"

    def paint(self):
        self.paints += 1
        self.output(f"{self.renderBar()}  {self.message}")


class OperationController:
    # *********
    # Drives one bulk operation against the console server.
    # Ready -> Submitting -> Listening -> Done, with one run per operation kind at a time.
    # *********

    def __init__(self, serverUrl, session=None, clock=time.monotonic, repaintInterval=0.5, output=print):
        self.serverUrl = serverUrl.rstrip("/")
        self.session = session or requests.Session()
        self.clock = clock
        self.repaintInterval = repaintInterval
        self.output = output
        self.state = ControllerState.READY
        self.inProgress = {operationKind: False for operationKind in OperationKind}
        self.flagLock = threading.Lock()
        self.operationId = None
        self.activeResponse = None
        self.view = None
        self.results = []
        self.summary = None
        self.errorMessage = None

    def start(self, operationKind, records, credentials):
        #######
        # Submit an operation and follow its progress to the end
        # Returns the final operation dict, or None when a run of the same kind is already active
        #######

        with self.flagLock:
            if self.inProgress[operationKind]:
                infoLogger.warning(f"A {operationKind.value} operation is already in progress - request ignored.")
                self.output(f"Warning: a {operationKind.value} operation is already in progress. Please wait for it to finish.")
                return None
            self.inProgress[operationKind] = True

        try:
            return self.runOperation(operationKind, records, credentials)
        finally:
            with self.flagLock:
                self.inProgress[operationKind] = False

    def runOperation(self, operationKind, records, credentials):
        self.state = ControllerState.SUBMITTING
        self.operationId = newOperationId(operationKind)
        self.results = []
        self.summary = None
        self.errorMessage = None
        self.view = ProgressView(len(records), self.repaintInterval, self.clock, self.output)

        # Subscribe first so no early progress is missed
        try:
            stream = self.session.get(f"{self.serverUrl}/api/progress/{self.operationId}", stream=True, timeout=(10, None))
        except requests.exceptions.RequestException as e:
            return self.finish(f"Could not connect to the progress stream: {e}")
        self.activeResponse = stream

        body = {
            "users": records,
            "environmentId": credentials.get("environmentId", ""),
            "clientId": credentials.get("clientId", ""),
            "clientSecret": credentials.get("clientSecret", ""),
            "clientType": credentials.get("clientType", "basic"),
            "operationId": self.operationId,
        }
        infoLogger.info(f"Submitting {operationKind.value} operation {self.operationId}: {len(records)} records.")
        try:
            response = self.session.post(f"{self.serverUrl}/api/{operationPaths[operationKind]}", json=body, timeout=30)
        except requests.exceptions.RequestException as e:
            self.closeStream()
            return self.finish(f"Failed to submit the operation: {e}")

        if response.status_code not in (200, 202):
            self.closeStream()
            try:
                error = response.json().get("error") or f"HTTP {response.status_code}"
            except ValueError:
                error = f"HTTP {response.status_code}"
            return self.finish(error)

        self.state = ControllerState.LISTENING
        try:
            for event in readEvents(stream):
                if self.state == ControllerState.DONE:
                    break
                self.view.update(event)
                if event.get("type") in terminalEventTypes:
                    if event.get("type") == "error":
                        self.errorMessage = event.get("message")
                    break
        except requests.exceptions.RequestException as e:
            if self.state != ControllerState.DONE:
                infoLogger.error(f"Progress stream for {self.operationId} dropped: {e}")
                self.errorMessage = f"Progress stream dropped: {e}"
        finally:
            self.closeStream()

        if self.state == ControllerState.DONE:
            # Cancelled while listening
            return self.fetchOperation()

        operation = self.fetchOperation()
        return self.finish(self.errorMessage, operation)

    def fetchOperation(self):
        #######
        # Read the final result list for the current operation
        #######

        try:
            response = self.session.get(f"{self.serverUrl}/api/operations/{self.operationId}", timeout=30)
        except requests.exceptions.RequestException as e:
            infoLogger.error(f"Could not fetch results for {self.operationId}: {e}")
            return None
        if response.status_code != 200:
            infoLogger.error(f"Could not fetch results for {self.operationId}: HTTP {response.status_code}")
            return None
        operation = response.json()
        self.results = operation.get("results", [])
        self.summary = operation.get("summary")
        if operation.get("error"):
            self.errorMessage = operation["error"]
        return operation

    def finish(self, errorMessage=None, operation=None):
        self.state = ControllerState.DONE
        if errorMessage:
            self.errorMessage = errorMessage
            infoLogger.error(f"Operation {self.operationId} ended: {errorMessage}")
        if operation is None:
            operation = {
                "operationId": self.operationId,
                "success": False,
                "results": self.results,
                "summary": self.summary,
            }
            if self.errorMessage:
                operation["error"] = self.errorMessage
        return operation

    def closeStream(self):
        response = self.activeResponse
        self.activeResponse = None
        if response is not None:
            response.close()

    def cancel(self):
        #######
        # Stop following the operation and ask the server to stop it
        # Always leaves the controller in Done
        #######

        operationId = self.operationId
        self.state = ControllerState.DONE
        self.closeStream()
        if operationId is None:
            return False
        try:
            response = self.session.post(f"{self.serverUrl}/api/operations/{operationId}/cancel", timeout=10)
        except requests.exceptions.RequestException as e:
            infoLogger.error(f"Cancel request for {operationId} failed: {e}")
            return False
        infoLogger.info(f"Cancel requested for operation {operationId}: HTTP {response.status_code}")
        return response.status_code == 200


def loadSettings(settingsFile):
    #######
    # Read the saved connection settings, an empty dict when there are none
    #######

    if not os.path.isfile(settingsFile):
        return {}
    try:
        with open(settingsFile, "r", encoding="utf-8") as f:
            settings = json.load(f).get(settingsKey, {})
    except (OSError, ValueError, AttributeError) as e:
        infoLogger.warning(f"Ignoring unreadable settings file {settingsFile}: {e}")
        return {}
    return settings if isinstance(settings, dict) else {}


def saveSettings(settingsFile, settings):
    # The client secret is never written to disk
    stored = {key: value for key, value in settings.items() if key != "clientSecret"}
    settingsDirectory = os.path.dirname(settingsFile)
    if settingsDirectory:
        os.makedirs(settingsDirectory, exist_ok=True)
    with open(settingsFile, "w", encoding="utf-8") as f:
        json.dump({settingsKey: stored}, f, indent=2)


def printWelcome(consoleConfig):
    # *********
    # Prints a welcome message for the console client.
    # *********
    print(f'')
    print(f'********************************************')
    print(f'PingOne Bulk Console - version {version}')
    print(f'********************************************')
    print(f'')
    print(f'Console server: {consoleConfig.serverUrl}')
    print(f'Actions will be written to the log file {consoleConfig.logDirectory}/P1BulkConsole.log')
    print(f'')


def getOperationKind():
    # *********
    # Prompts for the operation to run.
    # *********
    choices = {"import": OperationKind.CREATE, "modify": OperationKind.MODIFY, "delete": OperationKind.DELETE}
    while True:
        getKind = input(f'Which operation do you want to run? (import/modify/delete): [import] ').strip().lower()
        if not getKind:
            return OperationKind.CREATE
        if getKind in choices:
            return choices[getKind]
        print(f'')
        print(f'*****************************')
        print(f"Invalid choice, please retry.")
        print(f'*****************************')
        print(f'')


def getCsvFile(operationKind):
    # *********
    # Prompts for the CSV file and shows a preview of it.
    # *********
    while True:
        getFileName = input(f'What is the path of your CSV file?: ').strip()
        if not os.path.isfile(getFileName):
            print(f'Error: CSV file not found at {getFileName}. Please retry.')
            print(f'')
            continue
        try:
            with open(getFileName, "r", newline="", encoding="utf-8-sig") as csvFile:
                csvText = csvFile.read()
            metadata = csvMetadata(csvText, os.path.basename(getFileName))
            csvHeaders, csvRows = parseCsvText(csvText)
        except (MappingError, UnicodeDecodeError) as e:
            print(f'Error reading CSV file: {e}')
            print(f'')
            continue

        print(f'')
        print(f'File:     {metadata["filename"]}')
        print(f'Records:  {metadata["recordCount"]}')
        print(f'Headers:  {", ".join(metadata["headers"])}')
        print(f'')
        hasIdentifier = metadata["hasIdentifier"] or (operationKind != OperationKind.CREATE and metadata["hasUserId"])
        if not hasIdentifier:
            print(f'Warning: no username or email column found - every record will fail.')
            print(f'')
        return csvRows


def getCredentials(settings):
    # *********
    # Prompts for the PingOne worker credentials, offering the saved values as defaults.
    # *********
    credentials = {}
    savedEnvironment = settings.get("environmentId", "")
    getEnvironmentId = input(f'What is your PingOne Environment ID?: [{savedEnvironment}] ').strip()
    credentials["environmentId"] = getEnvironmentId or savedEnvironment
    savedClient = settings.get("clientId", "")
    getClientId = input(f'What is your PingOne Client ID?: [{savedClient}] ').strip()
    credentials["clientId"] = getClientId or savedClient
    credentials["clientSecret"] = pwinput.pwinput(prompt='What is your PingOne Client Secret? :', mask='*')
    savedType = settings.get("clientType", "basic")
    getClientType = input(f'What is your client authentication type? (basic/post): [{savedType}] ').strip().lower()
    credentials["clientType"] = getClientType if getClientType in ("basic", "post") else savedType
    print(f'')
    return credentials


def browseResults(results, pageSize):
    # *********
    # Page through the results, show failure details and export on request.
    # *********
    page = 1
    while True:
        pageData = paginate(results, page, pageSize)
        print(renderPage(pageData))
        getCommand = input(f'[n]ext, [p]revious, [d] <row> for details, [e]xport, [q]uit: ').strip().lower()
        if getCommand in ("n", "next"):
            page = pageData["page"] + 1
        elif getCommand in ("p", "previous"):
            page = pageData["page"] - 1
        elif getCommand.startswith("d"):
            rowNumber = getCommand[1:].strip()
            if not rowNumber.isdigit() or not 0 < int(rowNumber) <= len(results):
                print(f'Invalid row number.')
                continue
            details = debugDetails(results[int(rowNumber) - 1])
            if details is None:
                print(f'Row {rowNumber} did not fail - no debug details.')
            else:
                print(json.dumps(details, indent=2))
        elif getCommand in ("e", "export"):
            filename = exportFilename()
            with open(filename, "w", encoding="utf-8", newline="") as f:
                f.write(exportCsv(results))
            print(f'Results exported to {filename}')
            infoLogger.info(f"Results exported to {filename}")
        elif getCommand in ("q", "quit", ""):
            return


def main():
    try:
        consoleConfig = readConfigurationFile()
    except ConfigError as e:
        print(f'Error: {e}')
        raise SystemExit(1)

    setupLogging(consoleConfig.logDirectory)
    printWelcome(consoleConfig)
    infoLogger.info(f"PingOne Bulk Console - version {version}")

    settings = loadSettings(consoleConfig.settingsFile)
    operationKind = getOperationKind()
    records = getCsvFile(operationKind)
    if not records:
        print(f'The CSV file has no records - nothing to do.')
        return

    getConfirm = input(f'{operationKind.label} {len(records)} users? (y/n): [y] ').strip().lower()
    if getConfirm not in ("", "y", "yes"):
        print(f'Cancelled.')
        return

    credentials = getCredentials(settings)
    saveSettings(consoleConfig.settingsFile, credentials)

    controller = OperationController(consoleConfig.serverUrl)
    try:
        operation = controller.start(operationKind, records, credentials)
    except KeyboardInterrupt:
        print(f'')
        print(f'Cancelling...')
        controller.cancel()
        operation = controller.fetchOperation()

    print(f'')
    if not operation:
        print(f'No results were returned.')
        return
    if operation.get("error"):
        print(f'****************************************************************')
        print(f'Operation ended with an error: {operation["error"]}')
        print(f'****************************************************************')
        print(f'')
    summary = operation.get("summary")
    if summary:
        print(f'Total: {summary["total"]}  Succeeded: {summary["successCount"]}  Failed: {summary["errorCount"]}  Skipped: {summary["skippedCount"]}')
        print(f'')
    if operation.get("results"):
        browseResults(operation["results"], consoleConfig.pageSize)


if __name__ == "__main__":
    main()
