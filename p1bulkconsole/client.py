# PingOne Bulk Console - Remote User Operation Client
# Last Update: October 19, 2026

import threading
import time

import requests
from ratelimit import limits, sleep_and_retry

from p1bulkconsole.errors import NetworkError, NotFoundError, P1Error, RateLimitError
from p1bulkconsole.logs import detailedFailureLogger, infoLogger, maskId
from p1bulkconsole.mapper import buildModifyPayload, buildUserPayload, recordIdentifier
from p1bulkconsole.models import OperationKind, OperationResult

importContentType = 'application/vnd.pingidentity.user.import+json'


def responseJson(response):
    try:
        return response.json()
    except ValueError:
        return None


def errorMessage(response):
    # *********
    # Pull the most specific message PingOne gives for a failed call.
    # Returns the message and the raw payload for debugging.
    # *********
    payload = responseJson(response)
    if isinstance(payload, dict):
        details = payload.get('details')
        if isinstance(details, list) and details and isinstance(details[0], dict) and details[0].get('message'):
            return details[0]['message'], payload
        for key in ('detail', 'message', 'error_description', 'error'):
            if payload.get(key):
                return str(payload[key]), payload
        return f"PingOne returned HTTP {response.status_code}", payload
    return f"PingOne returned HTTP {response.status_code}: {response.text}", response.text


def filterValue(value):
    # Quote a value for a SCIM filter string literal
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def isUniquenessViolation(response):
    payload = responseJson(response)
    if not isinstance(payload, dict):
        return False
    for detail in payload.get('details') or []:
        if isinstance(detail, dict) and detail.get('code') == 'UNIQUENESS_VIOLATION':
            return True
    return False


def matchesCurrent(requested, current):
    # *********
    # True when every requested attribute already holds the requested value.
    # *********
    if not isinstance(current, dict):
        return False
    for key, value in requested.items():
        if isinstance(value, dict):
            if not matchesCurrent(value, current.get(key)):
                return False
        elif current.get(key) != value:
            return False
    return True


class UserOperationClient:
    # *********
    # Performs one create, modify or delete call against the PingOne users API.
    # perform() never raises: every failure comes back as an error result.
    # *********

    def __init__(self, session=None, geography=".com", timeout=10, retryCount=0, retryBackoff=1, forcePasswordChange=False, callsPerSecond=100, sleep=time.sleep):
        self.session = session if session is not None else requests.Session()
        self.geography = geography
        self.timeout = timeout
        self.retryCount = retryCount
        self.retryBackoff = retryBackoff
        self.forcePasswordChange = forcePasswordChange
        self.sleep = sleep
        self.defaultPopulations = {}
        self.populationLock = threading.Lock()
        # Limit to callsPerSecond calls per second across every worker thread
        self.sendRequest = sleep_and_retry(limits(calls=callsPerSecond, period=1)(self.sendRequestNow))

    def apiUrl(self, environmentId, path):
        return f"https://api.pingone{self.geography}/v1/environments/{environmentId}/{path}"

    def sendRequestNow(self, method, url, **kwargs):
        return self.session.request(method, url, **kwargs)

    def callApi(self, method, url, p1At, json=None, params=None, contentType='application/json'):
        #######
        # Issue one PingOne API call with the bounded timeout and configured retries
        #######

        requestHeaders = {}
        requestHeaders['Authorization'] = "Bearer " + p1At
        requestHeaders['Content-Type'] = contentType

        attempt = 0
        while True:
            try:
                response = self.sendRequest(method, url, headers=requestHeaders, json=json, params=params, timeout=self.timeout)
            except requests.exceptions.Timeout:
                raise NetworkError(f"Request to PingOne timed out after {self.timeout} seconds")
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"Error connecting to PingOne: {e}")

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self.retryCount:
                attempt += 1
                infoLogger.info(f"PingOne returned {response.status_code} for {method} {url} - retry {attempt} of {self.retryCount}.")
                self.sleep(self.retryBackoff * attempt)
                continue

            if response.status_code == 429:
                message, payload = errorMessage(response)
                raise RateLimitError(f"Rate limited by PingOne: {message}", retryAfter=response.headers.get('Retry-After'), detail=payload)
            return response

    def perform(self, operationKind, record, p1At, p1Environment, index=0):
        #######
        # Perform one operation for one record and return its result
        #######

        identifier = recordIdentifier(record, index)
        try:
            match operationKind:
                case OperationKind.CREATE:
                    return self.createUser(record, identifier, p1At, p1Environment)
                case OperationKind.MODIFY:
                    return self.modifyUser(record, identifier, p1At, p1Environment)
                case OperationKind.DELETE:
                    return self.deleteUser(record, identifier, p1At, p1Environment)
                case _:
                    return OperationResult.error(identifier, f"Unsupported operation: {operationKind}")
        except NotFoundError as e:
            infoLogger.error(f"User {identifier} not found for {operationKind.value}.")
            return OperationResult.error(identifier, str(e))
        except RateLimitError as e:
            infoLogger.error(f"Rate limited processing user {identifier}.")
            detailedFailureLogger.error(f"Rate limited processing user {identifier}: {e.detail}")
            return OperationResult.error(identifier, str(e), detail=e.detail, rateLimited=True)
        except P1Error as e:
            infoLogger.error(f"Error processing user {identifier}: {e}")
            return OperationResult.error(identifier, str(e))
        except Exception as e:
            infoLogger.error(f"Unexpected error processing user {identifier}: {e}")
            detailedFailureLogger.error(f"Unexpected error processing user {identifier}: {e!r}")
            return OperationResult.error(identifier, f"Unexpected error: {e}", detail=repr(e))

    def getDefaultPopulation(self, p1Environment, p1At):
        #######
        # Look up the default population once per environment
        #######

        with self.populationLock:
            if p1Environment in self.defaultPopulations:
                return self.defaultPopulations[p1Environment]

            response = self.callApi("GET", self.apiUrl(p1Environment, "populations"), p1At)
            if response.status_code != 200:
                message, payload = errorMessage(response)
                detailedFailureLogger.error(f"Failed to read populations: {response.status_code} - {response.text}")
                raise P1Error(f"Failed to get default population: {message}")

            populations = (responseJson(response) or {}).get('_embedded', {}).get('populations', [])
            defaultPopulation = None
            for population in populations:
                if population.get('default') is True:
                    defaultPopulation = population
                    break
            if defaultPopulation is None and populations:
                defaultPopulation = populations[0]
            if defaultPopulation is None:
                raise NotFoundError("No populations found in environment")

            infoLogger.info(f"Found default population {defaultPopulation['id']} in environment {maskId(p1Environment)}.")
            self.defaultPopulations[p1Environment] = defaultPopulation['id']
            return defaultPopulation['id']

    def createUser(self, record, identifier, p1At, p1Environment):
        #######
        # Import one user into PingOne
        #######

        populationId = record.get('populationId') or record.get('population')
        if not populationId:
            populationId = self.getDefaultPopulation(p1Environment, p1At)

        user = buildUserPayload(record, populationId, self.forcePasswordChange)
        contentType = importContentType if 'password' in user else 'application/json'

        createResponse = self.callApi("POST", self.apiUrl(p1Environment, "users"), p1At, json=user, contentType=contentType)

        if createResponse.status_code == 201:
            userId = (responseJson(createResponse) or {}).get('id')
            infoLogger.info(f"User imported: {identifier}")
            return OperationResult.success(identifier, OperationKind.CREATE, "User created successfully", userId=userId)

        if createResponse.status_code == 409 or (createResponse.status_code == 400 and isUniquenessViolation(createResponse)):
            infoLogger.info(f"SKIPPING: user {identifier} already exists.")
            return OperationResult.skipped(identifier, "User already exists")

        message, payload = errorMessage(createResponse)
        infoLogger.error(f"Failed to import user {identifier} - see P1BulkConsoleFailuresDetail.log for more information.")
        detailedFailureLogger.error(f"Failed import for user {identifier}, details below:")
        detailedFailureLogger.error(f"{createResponse.status_code} - {createResponse.text}")
        return OperationResult.error(identifier, message, detail=payload)

    def findUser(self, record, p1At, p1Environment):
        #######
        # Resolve a user by username (or email when no username is given)
        #######

        if record.get('username'):
            field = 'username'
        else:
            field = 'email'
        value = record[field]
        filter = f'{field} eq "{filterValue(value)}"'

        response = self.callApi("GET", self.apiUrl(p1Environment, "users"), p1At, params={'filter': filter})
        if response.status_code != 200:
            message, payload = errorMessage(response)
            detailedFailureLogger.error(f"User search failed ({filter}): {response.status_code} - {response.text}")
            raise P1Error(f"User search failed: {message}")

        users = (responseJson(response) or {}).get('_embedded', {}).get('users', [])
        # A search hit only counts when it carries the searched value
        for user in users:
            if str(user.get(field, '')).lower() == value.lower():
                return user
        if users:
            infoLogger.warning(f"User search ({filter}) returned {len(users)} users, none matching {field} {value}.")
        raise NotFoundError("user not found")

    def getUser(self, userId, p1At, p1Environment):
        response = self.callApi("GET", self.apiUrl(p1Environment, f"users/{userId}"), p1At)
        if response.status_code == 404:
            raise NotFoundError("user not found")
        if response.status_code != 200:
            message, payload = errorMessage(response)
            detailedFailureLogger.error(f"Reading user {userId} failed: {response.status_code} - {response.text}")
            raise P1Error(f"Failed to read user: {message}")
        return responseJson(response) or {}

    def resolveUser(self, record, p1At, p1Environment):
        if record.get('userId'):
            return self.getUser(record['userId'], p1At, p1Environment)
        return self.findUser(record, p1At, p1Environment)

    def modifyUser(self, record, identifier, p1At, p1Environment):
        #######
        # Patch one user, skipping it when nothing would change
        #######

        currentUser = self.resolveUser(record, p1At, p1Environment)
        userId = currentUser.get('id') or record.get('userId')

        userData = buildModifyPayload(record)
        if not userData:
            infoLogger.info(f"SKIPPING: user {identifier} has no attributes to modify.")
            return OperationResult.skipped(identifier, "No attributes to modify", userId=userId)

        if matchesCurrent(userData, currentUser):
            infoLogger.info(f"SKIPPING: user {identifier} - no changes detected.")
            return OperationResult.skipped(identifier, "No changes detected (skipped)", userId=userId)

        patchResponse = self.callApi("PATCH", self.apiUrl(p1Environment, f"users/{userId}"), p1At, json=userData)

        if patchResponse.status_code == 200:
            infoLogger.info(f"User modified: {identifier} ({userId})")
            return OperationResult.success(identifier, OperationKind.MODIFY, "User modified successfully", userId=userId)
        if patchResponse.status_code == 404:
            return OperationResult.error(identifier, "user not found", userId=userId)

        message, payload = errorMessage(patchResponse)
        infoLogger.error(f"Failed to modify user {identifier} - see P1BulkConsoleFailuresDetail.log for more information.")
        detailedFailureLogger.error(f"Failed modify for user {identifier}, details below:")
        detailedFailureLogger.error(f"{patchResponse.status_code} - {patchResponse.text}")
        return OperationResult.error(identifier, message, detail=payload, userId=userId)

    def deleteUser(self, record, identifier, p1At, p1Environment):
        ######
        # Deletes a user in PingOne Environment
        ######

        if record.get('userId'):
            userId = record['userId']
        else:
            userId = self.findUser(record, p1At, p1Environment)['id']

        response = self.callApi("DELETE", self.apiUrl(p1Environment, f"users/{userId}"), p1At)

        if response.status_code == 204:
            infoLogger.info(f"User {identifier} ({userId}) deleted successfully.")
            return OperationResult.success(identifier, OperationKind.DELETE, "User deleted successfully", userId=userId)
        if response.status_code == 404:
            infoLogger.error(f"User {identifier} ({userId}) not found for delete.")
            return OperationResult.error(identifier, "user not found", userId=userId)

        message, payload = errorMessage(response)
        infoLogger.error(f"Error deleting user {identifier} ({userId})")
        detailedFailureLogger.error(f"Failed to delete user {userId}: {response.status_code} - {response.text}")
        return OperationResult.error(identifier, message, detail=payload, userId=userId)
