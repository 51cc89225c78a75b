# PingOne Bulk Console - CSV Input
# Last Update: October 19, 2026

import csv
import io

from p1bulkconsole.errors import MappingError
from p1bulkconsole.logs import infoLogger


def parseCsvText(csvText):
    #######
    # Parse CSV text into its headers and a list of row dicts
    # Blank rows are skipped, headers are stripped
    #######

    if csvText.startswith("\ufeff"):
        csvText = csvText[1:]

    csvFileReader = csv.reader(io.StringIO(csvText, newline=""))
    try:
        headers = next(csvFileReader)
    except StopIteration:
        raise MappingError("CSV file is empty - a header row is required")

    csvHeaders = []
    for header in headers:
        csvHeaders.append(header.strip())

    if not any(csvHeaders):
        raise MappingError("CSV file has an empty header row")

    csvRows = []
    for row in csvFileReader:
        if not any(cell.strip() for cell in row):
            continue
        rawRow = {}
        for idx, header in enumerate(csvHeaders):
            if not header:
                continue
            rawRow[header] = row[idx] if idx < len(row) else ""
        csvRows.append(rawRow)

    return csvHeaders, csvRows


def decodeCsvBytes(csvBytes):
    try:
        return csvBytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise MappingError("CSV file must be UTF-8 encoded")


def readCsvFile(csvPath):
    #######
    # Read and parse a CSV file from disk
    #######

    infoLogger.info(f"Reading CSV file: {csvPath}")
    with open(csvPath, "r", newline="", encoding="utf-8-sig") as csvFile:
        csvText = csvFile.read()
    csvHeaders, csvRows = parseCsvText(csvText)
    infoLogger.info(f"CSV file {csvPath} read: {len(csvRows)} records, headers {csvHeaders}")
    return csvHeaders, csvRows


def csvMetadata(csvText, filename=""):
    #######
    # Quick preview of a CSV file before it is submitted
    #######

    csvHeaders, csvRows = parseCsvText(csvText)
    return {
        "filename": filename,
        "headers": csvHeaders,
        "recordCount": len(csvRows),
        "hasIdentifier": "username" in csvHeaders or "email" in csvHeaders,
        "hasUserId": "userId" in csvHeaders or "id" in csvHeaders,
    }
