# PingOne Bulk Console - Worker Token Cache
# Last Update: October 19, 2026

import base64
import re
import threading
import time

import requests

from p1bulkconsole.errors import AuthError
from p1bulkconsole.logs import detailedFailureLogger, infoLogger, maskId
from p1bulkconsole.models import WorkerToken

guidFormat = r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}$"

oneMinute = 60 * 1000


def currentTimeMs():
    return int(time.time() * 1000)


def convertCreds(p1ClientId, p1ClientSecret):
    # *********
    # Converts the client ID and secret to a base64-encoded string for HTTP Basic Auth.
    # *********
    credString = p1ClientId + ":" + p1ClientSecret
    credBytes = credString.encode("utf-8")
    b64CredBytes = base64.b64encode(credBytes)
    b64CredString = b64CredBytes.decode("ascii")
    return b64CredString


def validateCredentialFormat(environmentId, clientId, clientSecret):
    # *********
    # Checks the shape of the credentials before PingOne is called.
    # Returns a list of problems, empty when the credentials look valid.
    # *********
    errors = []
    if not re.match(guidFormat, environmentId or ""):
        errors.append("Environment ID must be a valid UUID format")
    if not re.match(guidFormat, clientId or ""):
        errors.append("Client ID must be a valid UUID format")
    if len(clientSecret or "") < 10:
        errors.append("Client Secret appears to be too short")
    return errors


class WorkerTokenCache:
    # *********
    # Caches one worker token per (environment, client) pair.
    # A token is reused while now < expiresAt - buffer; refreshes for the same pair
    # are serialized so concurrent callers collapse into one token request.
    # *********

    def __init__(self, session=None, geography=".com", timeout=10, bufferMinutes=5, defaultTtlMinutes=55, clock=None):
        self.session = session if session is not None else requests.Session()
        self.geography = geography
        self.timeout = timeout
        self.bufferMs = int(bufferMinutes * oneMinute)
        self.defaultTtlMs = int(defaultTtlMinutes * oneMinute)
        self.clock = clock if clock is not None else currentTimeMs
        self.tokenCache = {}
        self.keyLocks = {}
        self.cacheLock = threading.Lock()

    def tokenUrl(self, environmentId):
        return f"https://auth.pingone{self.geography}/{environmentId}/as/token"

    def keyLock(self, cacheKey):
        with self.cacheLock:
            if cacheKey not in self.keyLocks:
                self.keyLocks[cacheKey] = threading.Lock()
            return self.keyLocks[cacheKey]

    def cachedToken(self, cacheKey):
        with self.cacheLock:
            cached = self.tokenCache.get(cacheKey)
        if cached is not None and cached.usable(self.clock(), self.bufferMs):
            return cached
        return None

    def getToken(self, environmentId, clientId, clientSecret, clientType="basic"):
        #######
        # Return a usable worker access token, requesting one only on a miss or stale entry
        #######

        cacheKey = (environmentId, clientId)

        cached = self.cachedToken(cacheKey)
        if cached is not None:
            self.logTokenAge(cached, "reused")
            return cached.accessToken

        with self.keyLock(cacheKey):
            # Another caller may have refreshed while this one waited
            cached = self.cachedToken(cacheKey)
            if cached is not None:
                self.logTokenAge(cached, "reused")
                return cached.accessToken

            with self.cacheLock:
                reason = "token expired" if cacheKey in self.tokenCache else "no cached token"
            infoLogger.info(f"TOKEN REQUEST: Getting new worker token for environment {maskId(environmentId)} ({reason}).")

            workerToken = self.requestToken(environmentId, clientId, clientSecret, clientType)
            with self.cacheLock:
                self.tokenCache[cacheKey] = workerToken

            ttlMinutes = (workerToken.expiresAt - workerToken.createdAt) // oneMinute
            infoLogger.info(f"TOKEN CREATED: Cached for {ttlMinutes} minutes, client {maskId(clientId)}.")
            return workerToken.accessToken

    def requestToken(self, environmentId, clientId, clientSecret, clientType="basic"):
        #######
        # Get an access token from PingOne with the client credentials grant
        #######

        requestHeaders = {}
        requestHeaders['Content-Type'] = 'application/x-www-form-urlencoded'
        requestBody = {}
        requestBody['grant_type'] = 'client_credentials'

        if clientType == "post":
            requestBody['client_id'] = clientId
            requestBody['client_secret'] = clientSecret
        else:
            requestHeaders['Authorization'] = 'Basic ' + convertCreds(clientId, clientSecret)

        tokenTime = self.clock()

        try:
            response = self.session.post(self.tokenUrl(environmentId), headers=requestHeaders, data=requestBody, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            infoLogger.error(f"Error connecting to PingOne token endpoint: {e}")
            raise AuthError(f"Failed to communicate with PingOne: {e}", status=None, transient=True)

        if response.status_code != 200:
            infoLogger.error(f"Error getting access token for environment {maskId(environmentId)}: {response.status_code}")
            detailedFailureLogger.error(f"Error getting access token: {response.status_code} - {response.text}")
            transient = response.status_code >= 500 or response.status_code == 429
            raise AuthError(f"PingOne API error ({response.status_code})", status=response.status_code, transient=transient, detail=response.text)

        try:
            responseJson = response.json()
            accessToken = responseJson['access_token']
            expiresIn = responseJson.get('expires_in')
            if expiresIn:
                expiresAt = tokenTime + int(float(expiresIn) * 1000)
            else:
                expiresAt = tokenTime + self.defaultTtlMs
        except (ValueError, KeyError, TypeError, AttributeError):
            infoLogger.error(f"Invalid token response from PingOne for environment {maskId(environmentId)}.")
            raise AuthError("Invalid token response from PingOne", status=response.status_code, transient=True)

        return WorkerToken(
            accessToken=accessToken,
            expiresAt=expiresAt,
            createdAt=tokenTime,
            environmentId=environmentId,
            clientId=clientId,
            tokenType=responseJson.get('token_type', 'Bearer'),
        )

    def invalidate(self, environmentId=None, clientId=None):
        #######
        # Drop one cached token, or every cached token when no pair is given
        #######

        with self.cacheLock:
            if environmentId and clientId:
                removed = self.tokenCache.pop((environmentId, clientId), None)
                if removed is not None:
                    infoLogger.info(f"Token cleared from cache for environment {maskId(environmentId)}.")
                else:
                    infoLogger.info(f"No token found in cache for environment {maskId(environmentId)}.")
                return 1 if removed is not None else 0
            cacheSize = len(self.tokenCache)
            self.tokenCache = {}
        infoLogger.info(f"All tokens cleared from cache ({cacheSize} tokens).")
        return cacheSize

    def logTokenAge(self, workerToken, action):
        now = self.clock()
        ageMinutes = (now - workerToken.createdAt) // oneMinute
        remainingMinutes = (workerToken.expiresAt - now) // oneMinute
        infoLogger.info(f"TOKEN {action.upper()}: Age={ageMinutes}m, Remaining={remainingMinutes}m, client {maskId(workerToken.clientId)}.")

    def tokenInfo(self, workerToken):
        now = self.clock()
        return {
            "valid": workerToken.usable(now, self.bufferMs),
            "expiresIn": max(0, (workerToken.expiresAt - now) // 1000),
            "ageMinutes": (now - workerToken.createdAt) // oneMinute,
            "createdAt": workerToken.createdAt,
            "expiresAt": workerToken.expiresAt,
        }

    def status(self, environmentId, clientId):
        #######
        # Report whether a usable token is cached for the pair
        #######

        cacheSettings = {"bufferSeconds": self.bufferMs // 1000, "defaultTtlSeconds": self.defaultTtlMs // 1000}
        cached = self.cachedToken((environmentId, clientId))
        if cached is None:
            return {"valid": False, "expiresIn": 0, "cache": cacheSettings}
        tokenStatus = self.tokenInfo(cached)
        tokenStatus["cache"] = cacheSettings
        return tokenStatus

    def describe(self):
        with self.cacheLock:
            cachedTokens = list(self.tokenCache.values())
        tokens = []
        for workerToken in cachedTokens:
            tokenStatus = self.tokenInfo(workerToken)
            tokenStatus["environmentId"] = maskId(workerToken.environmentId)
            tokenStatus["clientId"] = maskId(workerToken.clientId)
            tokens.append(tokenStatus)
        return {"totalTokens": len(tokens), "tokens": tokens}

    def testCredentials(self, environmentId, clientId, clientSecret, clientType="basic"):
        #######
        # Validate credentials with a fresh token that is never cached
        #######

        infoLogger.info(f"Testing PingOne credentials for environment {maskId(environmentId)}, client {maskId(clientId)}.")
        workerToken = self.requestToken(environmentId, clientId, clientSecret, clientType)

        requestHeaders = {}
        requestHeaders['Authorization'] = "Bearer " + workerToken.accessToken
        requestHeaders['Content-Type'] = 'application/json'

        try:
            response = self.session.get(f"https://api.pingone{self.geography}/v1/environments/{environmentId}", headers=requestHeaders, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            infoLogger.error(f"Error connecting to PingOne: {e}")
            raise AuthError(f"Failed to communicate with PingOne: {e}", status=None, transient=True)

        if response.status_code != 200:
            infoLogger.error(f"Credentials test failed reading environment {maskId(environmentId)}: {response.status_code}")
            detailedFailureLogger.error(f"Credentials test failed: {response.status_code} - {response.text}")
            raise AuthError(f"PingOne API error ({response.status_code})", status=response.status_code, detail=response.text)

        environment = response.json()
        infoLogger.info(f"Credentials test successful for environment {maskId(environmentId)}.")
        return {
            "id": environmentId,
            "name": environment.get("name"),
            "type": environment.get("type"),
        }
