# PingOne Bulk Console - Record Mapper
# Last Update: October 19, 2026

import re

from p1bulkconsole.errors import MappingError

emailFormat = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Columns that address a user rather than describe one
identifierFields = {"userId", "id"}

# Columns handled explicitly when building a PingOne user body
specialFields = {"password", "population", "populationId", "enabled", "active"}

nameAliases = {
    "firstName": "given",
    "givenName": "given",
    "lastName": "family",
    "familyName": "family",
    "middleName": "middle",
    "formattedName": "formatted",
    "prefix": "honorificPrefix",
    "suffix": "honorificSuffix",
}

phoneFields = {"primaryPhone", "mobilePhone"}

addressFields = {"streetAddress", "locality", "region", "postalCode", "countryCode"}


def mapRecord(rawRow, acceptUserId=False):
    #######
    # Normalize one parsed CSV row into a record
    # Raises MappingError when the row has no usable identifier
    # Modify and delete rows may be addressed by userId alone (acceptUserId)
    #######

    record = {}
    for header, value in rawRow.items():
        if header is None:
            # Extra cells beyond the header row
            continue
        header = str(header).strip()
        if not header:
            continue
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        value = str(value).strip()
        if value:
            record[header] = value

    if "id" in record and "userId" not in record:
        record["userId"] = record.pop("id")

    hasUserId = acceptUserId and "userId" in record
    if "username" not in record and "email" not in record and not hasUserId:
        raise MappingError("missing identifier", row=rawRow)

    if "email" in record and not re.match(emailFormat, record["email"]):
        raise MappingError(f"invalid email format: {record['email']}", row=rawRow)

    return record


def recordIdentifier(record, index=0):
    # The label a record is reported under
    return record.get("username") or record.get("email") or record.get("userId") or f"user-{index}"


def coerceBoolean(value):
    return str(value).strip().lower() in ("true", "yes", "1")


def setNested(target, header, value):
    #######
    # Place a dotted header (name.given) into nested objects
    #######

    parts = header.split(".")
    current = target
    for part in parts[:-1]:
        if part not in current or not isinstance(current[part], dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def buildProfile(record):
    #######
    # Build the descriptive part of a PingOne user body shared by create and modify
    #######

    user = {}

    for header, value in record.items():
        if header in specialFields or header in identifierFields:
            continue
        if header in nameAliases or header in phoneFields or header in addressFields:
            continue
        setNested(user, header, value)

    # Name aliases never override an explicit name.* column
    for alias, nameField in nameAliases.items():
        if alias in record:
            name = user.setdefault("name", {})
            name.setdefault(nameField, record[alias])

    phoneNumbers = []
    if "primaryPhone" in record:
        phoneNumbers.append({"value": record["primaryPhone"], "type": "work", "primary": True})
    if "mobilePhone" in record and record.get("mobilePhone") != record.get("primaryPhone"):
        phoneNumbers.append({"value": record["mobilePhone"], "type": "mobile", "primary": False})
    if phoneNumbers:
        user["phoneNumbers"] = phoneNumbers

    address = {}
    for addressField in sorted(addressFields):
        if addressField in record:
            address[addressField] = record[addressField]
    if address:
        address["type"] = "work"
        address["primary"] = True
        user["addresses"] = [address]

    enabledValue = record.get("enabled", record.get("active"))
    if enabledValue is not None:
        user["enabled"] = coerceBoolean(enabledValue)

    return user


def buildUserPayload(record, defaultPopulationId=None, forcePasswordChange=False):
    #######
    # Build the create-user body for one record
    #######

    user = buildProfile(record)
    user.setdefault("enabled", True)

    populationId = record.get("populationId") or record.get("population") or defaultPopulationId
    if populationId:
        user["population"] = {"id": populationId}

    if record.get("password"):
        user["password"] = {
            "value": record["password"],
            "forceChange": forcePasswordChange,
        }

    return user


def buildModifyPayload(record):
    #######
    # Build the patch body for one record
    # The identifying username/email stay out unless a userId addresses the user
    #######

    user = buildProfile(record)
    if "userId" not in record and "id" not in record:
        user.pop("username", None)
        if "username" not in record:
            user.pop("email", None)
    return user
