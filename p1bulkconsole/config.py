# PingOne Bulk Console - Configuration
# Last Update: October 19, 2026

import configparser
import os

from p1bulkconsole import version
from p1bulkconsole.errors import ConfigError
from p1bulkconsole.logs import infoLogger

configFileName = "P1BulkConsole.cfg"

defaultConfig = {
    "General": {
        "version": version,
    },
    "P1Config": {
        "p1geography": ".com",
        "requesttimeout": "10",
        "tokenbuffer": "5",
        "tokenttl": "55",
        "batchsize": "10",
        "batchpause": "0.5",
        "maxworkers": "10",
        "retrycount": "0",
        "retrybackoff": "1",
        "forcedpasswordchange": "false",
        "callspersecond": "100",
    },
    "Server": {
        "host": "127.0.0.1",
        "port": "4000",
        "maxfilesize": str(10 * 1024 * 1024),
    },
    "Logging": {
        "logdirectory": "logs",
    },
    "Console": {
        "serverurl": "http://127.0.0.1:4000",
        "pagesize": "25",
        "settingsfile": os.path.join("~", ".p1bulkconsole", "settings.json"),
    },
}


class ConsoleConfig:
    # *********
    # Typed view over the P1BulkConsole.cfg sections.
    # *********

    def __init__(self, configFile=None):
        if configFile is None:
            configFile = configparser.ConfigParser()
            configFile.read_dict(defaultConfig)
        self.configFile = configFile

        self.p1Geography = self.getString("P1Config", "p1geography")
        self.requestTimeout = self.getFloat("P1Config", "requesttimeout")
        self.tokenBuffer = self.getFloat("P1Config", "tokenbuffer")
        self.tokenTtl = self.getFloat("P1Config", "tokenttl")
        self.batchSize = self.getInt("P1Config", "batchsize")
        self.batchPause = self.getFloat("P1Config", "batchpause")
        self.maxWorkers = self.getInt("P1Config", "maxworkers")
        self.retryCount = self.getInt("P1Config", "retrycount")
        self.retryBackoff = self.getFloat("P1Config", "retrybackoff")
        self.forcedPasswordChange = self.getBool("P1Config", "forcedpasswordchange")
        self.callsPerSecond = self.getInt("P1Config", "callspersecond")

        self.host = self.getString("Server", "host")
        self.port = self.getInt("Server", "port")
        self.maxFileSize = self.getInt("Server", "maxfilesize")

        self.logDirectory = self.getString("Logging", "logdirectory")

        self.serverUrl = self.getString("Console", "serverurl").rstrip("/")
        self.pageSize = self.getInt("Console", "pagesize")
        self.settingsFile = os.path.expanduser(self.getString("Console", "settingsfile"))

        if not self.p1Geography.startswith("."):
            raise ConfigError(f"Invalid value for p1geography in P1Config section: {self.p1Geography}")
        if self.batchSize < 1:
            raise ConfigError(f"Invalid value for batchsize in P1Config section: must be at least 1")
        if self.maxWorkers < 1:
            raise ConfigError(f"Invalid value for maxworkers in P1Config section: must be at least 1")
        if self.retryCount < 0:
            raise ConfigError(f"Invalid value for retrycount in P1Config section: must not be negative")

    def getString(self, section, field):
        try:
            return self.configFile[section][field].strip()
        except KeyError:
            raise ConfigError(f"Missing {field} in {section} section of configuration file.")

    def getInt(self, section, field):
        value = self.getString(section, field)
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {field} in {section} section: {value}")

    def getFloat(self, section, field):
        value = self.getString(section, field)
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {field} in {section} section: {value}")

    def getBool(self, section, field):
        value = self.getString(section, field).lower()
        if value in ("true", "yes", "1"):
            return True
        if value in ("false", "no", "0"):
            return False
        raise ConfigError(f"Invalid value for {field} in {section} section: {value}")


def readConfigurationFile(configPath=None):
    #######
    # Read the configuration file, falling back to defaults for anything not set
    #######

    if configPath is None:
        configPath = os.environ.get("P1BULKCONSOLE_CONFIG", configFileName)

    configFile = configparser.ConfigParser()
    configFile.read_dict(defaultConfig)

    if os.path.isfile(configPath):
        infoLogger.info(f"Reading config file: {configPath}")
        try:
            configFile.read(configPath)
        except configparser.Error as e:
            infoLogger.error(f"Error reading configuration file: {e}")
            raise ConfigError(f"Error reading configuration file {configPath}: {e}")

        configVersion = configFile["General"]["version"]
        if configVersion != version:
            infoLogger.error(f"Error: Configuration file version {configVersion} does not match console version {version}.")
            raise ConfigError(f"Configuration file version {configVersion} does not match console version {version}.")
    else:
        infoLogger.info(f"Configuration file {configPath} not found - using defaults.")

    return ConsoleConfig(configFile)
