# PingOne Bulk Console - Results Presenter
# Last Update: October 19, 2026

import json
import math
from datetime import datetime

successStatuses = {"imported", "modified", "deleted", "success"}

exportHeaders = ["Row", "Identifier", "Status", "Message"]


def asResultDict(result):
    if isinstance(result, dict):
        return result
    return result.toDict()


def classifyStatus(result):
    # *********
    # success-kinds render as success, skipped as its own class, anything else as error.
    # *********
    status = asResultDict(result).get("status")
    if status in successStatuses:
        return "success"
    if status == "skipped":
        return "skipped"
    return "error"


def paginate(results, page=1, pageSize=25):
    #######
    # Slice the result list into one 1-based page
    #######

    if pageSize < 1:
        pageSize = 25
    total = len(results)
    totalPages = math.ceil(total / pageSize)
    page = max(1, min(page, max(totalPages, 1)))
    start = (page - 1) * pageSize

    rows = []
    for offset, result in enumerate(results[start:start + pageSize]):
        resultDict = asResultDict(result)
        rows.append({
            "row": resultDict.get("row", start + offset + 1),
            "identifier": resultDict.get("identifier") or resultDict.get("username") or "N/A",
            "status": resultDict.get("status") or "unknown",
            "message": resultDict.get("message") or "",
            "statusClass": classifyStatus(resultDict),
            "hasDebugDetails": classifyStatus(resultDict) == "error",
        })

    return {
        "page": page,
        "pageSize": pageSize,
        "total": total,
        "totalPages": totalPages,
        "rows": rows,
    }


def debugDetails(result):
    #######
    # The raw payload behind a failed row
    #######

    resultDict = asResultDict(result)
    if classifyStatus(resultDict) != "error":
        return None
    detail = resultDict.get("detail")
    if detail is not None and not isinstance(detail, str):
        detail = json.dumps(detail, indent=2, sort_keys=True)
    return {
        "identifier": resultDict.get("identifier"),
        "status": resultDict.get("status"),
        "message": resultDict.get("message"),
        "detail": detail,
    }


def csvCell(value):
    return '"' + str(value).replace('"', '""') + '"'


def exportCsv(results):
    #######
    # Serialize the full result list, every cell quoted with embedded quotes doubled
    #######

    lines = [",".join(exportHeaders)]
    for index, result in enumerate(results):
        resultDict = asResultDict(result)
        row = [
            resultDict.get("row", index + 1),
            resultDict.get("identifier") or resultDict.get("username") or "N/A",
            resultDict.get("status") or "unknown",
            resultDict.get("message") or "No message",
        ]
        lines.append(",".join(csvCell(cell) for cell in row))
    return "\n".join(lines) + "\n"


def exportFilename(now=None):
    if now is None:
        now = datetime.now()
    return f"pingone-results-{now.strftime('%Y-%m-%dT%H-%M-%S')}.csv"


def renderPage(pageData):
    #######
    # Text table of one page for the console
    #######

    statusMarks = {"success": "OK  ", "skipped": "SKIP", "error": "FAIL"}
    lines = []
    for row in pageData["rows"]:
        lines.append(f"{row['row']:>5}  {statusMarks[row['statusClass']]}  {row['identifier']:<40.40}  {row['status']:<9}  {row['message']}")
    lines.append(f"Page {pageData['page']} of {max(pageData['totalPages'], 1)} ({pageData['total']} results)")
    return "\n".join(lines)
