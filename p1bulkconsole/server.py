# PingOne Bulk Console - HTTP Server
# Last Update: October 19, 2026

import time

import requests
from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context
from werkzeug.utils import secure_filename

from p1bulkconsole import version
from p1bulkconsole.client import UserOperationClient
from p1bulkconsole.config import ConsoleConfig, readConfigurationFile
from p1bulkconsole.csvfile import csvMetadata, decodeCsvBytes, parseCsvText
from p1bulkconsole.errors import AuthError, ConfigError, MappingError, NotFoundError, OperationInProgressError, P1Error
from p1bulkconsole.logs import clearLogFile, infoLogger, logClientEntry, maskId, readLogContent, setupLogging
from p1bulkconsole.mapper import mapRecord, recordIdentifier
from p1bulkconsole.models import OperationKind, OperationRequest, OperationState, ResultKind, completeEvent, errorEvent
from p1bulkconsole.orchestrator import BatchOrchestrator, OperationRegistry
from p1bulkconsole.presenter import exportCsv, exportFilename
from p1bulkconsole.progress import ProgressChannel, formatEvent, keepAliveFrame
from p1bulkconsole.tokens import WorkerTokenCache, validateCredentialFormat

keepAliveSeconds = 15

api = Blueprint("api", __name__, url_prefix="/api")


class ConsoleServices:
    # *********
    # The long-lived objects one server process shares between requests.
    # *********

    def __init__(self, tokenCache, client, channel, orchestrator, registry):
        self.tokenCache = tokenCache
        self.client = client
        self.channel = channel
        self.orchestrator = orchestrator
        self.registry = registry

    @classmethod
    def fromConfig(cls, consoleConfig):
        session = requests.Session()
        tokenCache = WorkerTokenCache(
            session,
            geography=consoleConfig.p1Geography,
            timeout=consoleConfig.requestTimeout,
            bufferMinutes=consoleConfig.tokenBuffer,
            defaultTtlMinutes=consoleConfig.tokenTtl,
        )
        client = UserOperationClient(
            session,
            geography=consoleConfig.p1Geography,
            timeout=consoleConfig.requestTimeout,
            retryCount=consoleConfig.retryCount,
            retryBackoff=consoleConfig.retryBackoff,
            forcePasswordChange=consoleConfig.forcedPasswordChange,
            callsPerSecond=consoleConfig.callsPerSecond,
        )
        channel = ProgressChannel()
        orchestrator = BatchOrchestrator(
            tokenCache,
            client,
            channel,
            batchSize=consoleConfig.batchSize,
            batchPause=consoleConfig.batchPause,
            maxWorkers=consoleConfig.maxWorkers,
        )
        return cls(tokenCache, client, channel, orchestrator, OperationRegistry(orchestrator))


def services():
    return current_app.extensions["p1bulkconsole"]


def errorResponse(status, error, details=None, **extra):
    body = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return jsonify(body), status


def authErrorResponse(e, **extra):
    #######
    # Map a token failure onto the HTTP status the caller should see
    #######

    if e.status == 401:
        return errorResponse(401, "Invalid PingOne credentials. Please check your Client ID and Client Secret.", str(e), **extra)
    if e.status == 403:
        return errorResponse(403, "Access denied. Please check your client application permissions.", str(e), **extra)
    if e.status == 400:
        return errorResponse(400, "Invalid request to PingOne. Please check your Environment ID.", str(e), **extra)
    return errorResponse(502, "Failed to communicate with PingOne.", str(e), **extra)


def isTrue(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "yes", "1")


def readUploadedCsv():
    #######
    # Read the uploaded csv file field into rows
    #######

    csvUpload = request.files["csv"]
    filename = secure_filename(csvUpload.filename or "")
    if not filename.lower().endswith(".csv") and csvUpload.mimetype != "text/csv":
        raise MappingError("Only CSV files are allowed")
    csvHeaders, csvRows = parseCsvText(decodeCsvBytes(csvUpload.read()))
    infoLogger.info(f"CSV uploaded: {filename}, {len(csvRows)} records, headers {csvHeaders}")
    return filename, csvRows


def readOperationRequest(operationKind):
    #######
    # Build an operation request from a JSON body or a multipart csv upload
    #######

    if "csv" in request.files:
        data = request.form
        filename, records = readUploadedCsv()
    else:
        data = request.get_json(silent=True) or {}
        records = data.get("users")
        if not isinstance(records, list):
            raise MappingError("Missing required fields: users (array), environmentId, clientId, clientSecret")

    environmentId = (data.get("environmentId") or "").strip()
    clientId = (data.get("clientId") or "").strip()
    clientSecret = data.get("clientSecret") or ""
    if not environmentId or not clientId or not clientSecret:
        raise MappingError("Missing required PingOne credentials: environmentId, clientId, clientSecret")

    operationRequest = OperationRequest(
        operationKind=operationKind,
        records=list(records),
        environmentId=environmentId,
        clientId=clientId,
        clientSecret=clientSecret,
        clientType=data.get("clientType") or "basic",
    )
    return operationRequest, data.get("operationId") or None, isTrue(data.get("wait", False))


def bulkOperation(operationKind):
    #######
    # Shared handler for the three bulk endpoints
    #######

    try:
        operationRequest, operationId, wait = readOperationRequest(operationKind)
    except MappingError as e:
        infoLogger.error(f"Rejected bulk {operationKind.value} request: {e.reason}")
        return errorResponse(400, str(e))

    infoLogger.info(f"Bulk {operationKind.value} requested: {len(operationRequest.records)} records, environment {maskId(operationRequest.environmentId)}.")

    try:
        operationRun = services().registry.start(operationRequest, operationId=operationId, wait=wait)
    except OperationInProgressError as e:
        return errorResponse(409, str(e), operationId=operationId)
    except AuthError as e:
        return authErrorResponse(e, operationId=operationId)
    except Exception as e:
        infoLogger.error(f"Bulk {operationKind.value} failed: {e}")
        return errorResponse(500, f"Failed to perform bulk {operationKind.value}", str(e), operationId=operationId)

    if not wait:
        return jsonify({
            "operationId": operationRun.operationId,
            "success": True,
            "state": operationRun.state.value,
            "total": operationRun.total,
        }), 202

    body = {
        "operationId": operationRun.operationId,
        "success": operationRun.state == OperationState.COMPLETED,
        "results": operationRun.resultDicts(),
        "summary": operationRun.summary.toDict() if operationRun.summary else None,
    }
    if operationRun.errorMessage:
        body["error"] = operationRun.errorMessage
    return jsonify(body), 200


@api.post("/bulk-import")
def bulkImport():
    return bulkOperation(OperationKind.CREATE)


@api.post("/bulk-modify")
def bulkModify():
    return bulkOperation(OperationKind.MODIFY)


@api.post("/bulk-delete")
def bulkDelete():
    return bulkOperation(OperationKind.DELETE)


@api.get("/progress/<operationId>")
def progressStream(operationId):
    #######
    # Server-sent event stream of one operation's progress
    #######

    subscription = services().channel.subscribe(operationId)

    # A run that already ended still owes the subscriber its terminal event
    operationRun = services().registry.get(operationId)
    if operationRun is not None and operationRun.finished:
        if operationRun.state == OperationState.COMPLETED:
            subscription.deliver(completeEvent(operationRun.summary))
        else:
            subscription.deliver(errorEvent(operationRun.errorMessage or "Operation failed"))

    def generate():
        for event in subscription.events(keepAliveSeconds):
            if event is None:
                yield keepAliveFrame
            else:
                yield formatEvent(event)

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@api.get("/operations/<operationId>")
def operationStatus(operationId):
    operationRun = services().registry.get(operationId)
    if operationRun is None:
        return errorResponse(404, f"Unknown operation: {operationId}")
    return jsonify(operationRun.toDict())


@api.post("/operations/<operationId>/cancel")
def cancelOperation(operationId):
    operationRun = services().registry.cancel(operationId)
    if operationRun is None:
        return errorResponse(404, f"Unknown operation: {operationId}")
    return jsonify({"success": True, "operationId": operationId, "state": operationRun.state.value})


def csvAttachment(csvContent):
    response = Response(csvContent, mimetype="text/csv")
    response.headers["Content-Disposition"] = f"attachment; filename={exportFilename()}"
    return response


@api.get("/operations/<operationId>/export")
def exportOperation(operationId):
    operationRun = services().registry.get(operationId)
    if operationRun is None:
        return errorResponse(404, f"Unknown operation: {operationId}")
    return csvAttachment(exportCsv(operationRun.resultDicts()))


@api.post("/export")
def exportResults():
    data = request.get_json(silent=True) or {}
    results = data.get("results")
    if not isinstance(results, list) or not results:
        return errorResponse(400, "No results to export.")
    return csvAttachment(exportCsv(results))


@api.post("/csv/preview")
def previewCsv():
    if "csv" not in request.files:
        return errorResponse(400, "No CSV file uploaded")
    csvUpload = request.files["csv"]
    try:
        metadata = csvMetadata(decodeCsvBytes(csvUpload.read()), secure_filename(csvUpload.filename or ""))
    except MappingError as e:
        return errorResponse(400, str(e))
    return jsonify({"success": True, "metadata": metadata})


def readCredentials():
    data = request.get_json(silent=True) or {}
    environmentId = (data.get("environmentId") or "").strip()
    clientId = (data.get("clientId") or "").strip()
    clientSecret = data.get("clientSecret") or ""
    return environmentId, clientId, clientSecret, data.get("clientType") or "basic"


def singleUserOperation(operationKind, rawRow):
    #######
    # Perform one user operation outside of a bulk run
    #######

    environmentId, clientId, clientSecret, clientType = readCredentials()
    if not environmentId or not clientId or not clientSecret:
        return errorResponse(400, "Missing required fields: environmentId, clientId, and clientSecret are all required.")
    if not isinstance(rawRow, dict):
        return errorResponse(400, "Missing required field: user")

    try:
        record = mapRecord(rawRow, acceptUserId=operationKind != OperationKind.CREATE)
    except MappingError as e:
        return errorResponse(400, f"Invalid record: {e.reason}")

    try:
        p1At = services().tokenCache.getToken(environmentId, clientId, clientSecret, clientType)
    except AuthError as e:
        return authErrorResponse(e)

    infoLogger.info(f"Single user {operationKind.value} requested for {recordIdentifier(record)}, environment {maskId(environmentId)}.")
    result = services().client.perform(operationKind, record, p1At, environmentId)

    status = 200
    if result.kind == ResultKind.SUCCESS and operationKind == OperationKind.CREATE:
        status = 201
    elif result.kind == ResultKind.SKIPPED and operationKind == OperationKind.CREATE:
        status = 409
    elif result.kind == ResultKind.ERROR:
        status = 404 if result.message == "user not found" else 502
    return jsonify({"success": result.kind != ResultKind.ERROR, "result": result.toDict()}), status


def requestUser():
    data = request.get_json(silent=True) or {}
    return data.get("user")


@api.post("/users")
def createSingleUser():
    return singleUserOperation(OperationKind.CREATE, requestUser())


@api.route("/users/<userId>", methods=["PUT", "PATCH"])
def modifySingleUser(userId):
    user = requestUser()
    if isinstance(user, dict):
        user = dict(user, userId=userId)
    return singleUserOperation(OperationKind.MODIFY, user)


@api.delete("/users/<userId>")
def deleteSingleUser(userId):
    return singleUserOperation(OperationKind.DELETE, {"userId": userId})


@api.post("/users/delete")
def deleteSingleUserByName():
    #######
    # Delete the user with the posted username or email
    #######

    data = request.get_json(silent=True) or {}
    user = {}
    for field in ("username", "email"):
        if data.get(field):
            user[field] = data[field]
    if not user:
        return errorResponse(400, "Missing required field: username or email")
    return singleUserOperation(OperationKind.DELETE, user)


@api.get("/users/<userId>")
def readSingleUser(userId):
    environmentId, clientId, clientSecret, clientType = readCredentials()
    if not environmentId or not clientId or not clientSecret:
        return errorResponse(400, "Missing required fields: environmentId, clientId, and clientSecret are all required.")

    try:
        p1At = services().tokenCache.getToken(environmentId, clientId, clientSecret, clientType)
    except AuthError as e:
        return authErrorResponse(e)

    try:
        user = services().client.getUser(userId, p1At, environmentId)
    except NotFoundError as e:
        return errorResponse(404, str(e))
    except P1Error as e:
        return errorResponse(502, "Failed to read user from PingOne.", str(e))
    return jsonify({"success": True, "user": user})


@api.post("/token")
def workerToken():
    environmentId, clientId, clientSecret, clientType = readCredentials()
    if not environmentId or not clientId or not clientSecret:
        return errorResponse(400, "Missing required fields: environmentId, clientId, and clientSecret are all required.")

    tokenCache = services().tokenCache
    try:
        accessToken = tokenCache.getToken(environmentId, clientId, clientSecret, clientType)
    except AuthError as e:
        return authErrorResponse(e)

    return jsonify({
        "success": True,
        "access_token": accessToken,
        "token_type": "Bearer",
        "expires_in": tokenCache.status(environmentId, clientId)["expiresIn"],
    })


@api.post("/token/test")
def testToken():
    environmentId, clientId, clientSecret, clientType = readCredentials()
    if not environmentId or not clientId or not clientSecret:
        return errorResponse(400, "Missing required fields: environmentId, clientId, and clientSecret are all required.")

    formatErrors = validateCredentialFormat(environmentId, clientId, clientSecret)
    if formatErrors:
        return errorResponse(400, "Invalid credential format", formatErrors)

    try:
        environment = services().tokenCache.testCredentials(environmentId, clientId, clientSecret, clientType)
    except AuthError as e:
        return authErrorResponse(e)

    return jsonify({"success": True, "message": "Credentials are valid and working", "environment": environment})


@api.get("/token/status")
def tokenStatus():
    environmentId = request.args.get("environmentId")
    clientId = request.args.get("clientId")
    if not environmentId or not clientId:
        return errorResponse(400, "Missing required query parameters: environmentId, clientId")
    return jsonify(services().tokenCache.status(environmentId, clientId))


@api.get("/token/cache")
def tokenCacheInfo():
    return jsonify(services().tokenCache.describe())


@api.delete("/token")
def clearToken():
    cleared = services().tokenCache.invalidate(request.args.get("environmentId"), request.args.get("clientId"))
    return jsonify({"success": True, "cleared": cleared})


@api.get("/logs")
def getLogs():
    return jsonify({"success": True, "logContent": readLogContent()})


@api.post("/logs")
def postLogEntry():
    entry = request.get_json(silent=True)
    if not isinstance(entry, dict) or not entry.get("message"):
        return errorResponse(400, "Log entry requires a message")
    logClientEntry(entry)
    return jsonify({"success": True})


@api.get("/logs/export")
def exportLogs():
    response = Response(readLogContent(), mimetype="text/plain")
    response.headers["Content-Disposition"] = "attachment; filename=P1BulkConsole.log"
    return response


@api.post("/logs/clear")
def clearLogs():
    if clearLogFile():
        return jsonify({"success": True, "message": "Log file cleared successfully."})
    return errorResponse(404, "Log file not found.")


def createApp(consoleConfig=None, consoleServices=None):
    #######
    # Build the Flask application around one set of shared services
    #######

    if consoleConfig is None:
        consoleConfig = ConsoleConfig()
    if consoleServices is None:
        consoleServices = ConsoleServices.fromConfig(consoleConfig)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = consoleConfig.maxFileSize
    app.extensions["p1bulkconsole"] = consoleServices
    app.register_blueprint(api)

    @app.get("/health")
    def healthCheck():
        runningOperations = [operationKind.value for operationKind in OperationKind if consoleServices.orchestrator.isRunning(operationKind)]
        return jsonify({"status": "healthy", "version": version, "runningOperations": runningOperations})

    @app.errorhandler(413)
    def fileTooLarge(e):
        return errorResponse(413, f"File too large. Maximum size: {consoleConfig.maxFileSize // (1024 * 1024)}MB")

    @app.errorhandler(500)
    def internalError(e):
        infoLogger.error(f"Unhandled server error: {e}")
        return errorResponse(500, "Internal server error")

    return app


def printWelcome(consoleConfig):
    #######
    # Print the welcome message
    #######

    startTime = int(time.time() * 1000)

    print(f'')
    print(f'********************************************')
    print(f'PingOne Bulk Console Server - version {version}')
    print(f'********************************************')
    print(f'')
    print(f'Listening on http://{consoleConfig.host}:{consoleConfig.port}')
    print(f'Actions will be written to the log file {consoleConfig.logDirectory}/P1BulkConsole.log')
    print(f'')
    infoLogger.info(f"PingOne Bulk Console Server - version {version}")
    infoLogger.info(f"Starting server: {startTime}")


def main():
    try:
        consoleConfig = readConfigurationFile()
    except ConfigError as e:
        print(f'Error: {e}')
        raise SystemExit(1)

    setupLogging(consoleConfig.logDirectory)
    printWelcome(consoleConfig)
    app = createApp(consoleConfig)
    app.run(host=consoleConfig.host, port=consoleConfig.port, threaded=True)


if __name__ == "__main__":
    main()
