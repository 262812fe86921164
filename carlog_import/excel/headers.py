from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

"""Header normalization and alias mapping.

Spreadsheet headers arrive in many spellings ("Internal CAR #",
"Received Date\n(MM/DD)", "Cust. CAR #" ...). They are normalized and looked
up in a static many-to-one alias table to obtain canonical field names.
Headers without an alias are reported as unmatched rather than dropped.
"""

__all__ = [
    "HEADER_ALIASES",
    "PLACEHOLDER_PREFIX",
    "HeaderMapping",
    "MappingDiagnostic",
    "normalize_header",
    "fallback_key",
    "build_header_map",
]

logger = logging.getLogger(__name__)

# Prefix given to auto-generated header tokens for blank/merged header cells
PLACEHOLDER_PREFIX = "__EMPTY"

# normalized header text -> canonical field name
HEADER_ALIASES: dict[str, str] = {
    "internal car #": "internalCarNumber",
    "internal car#": "internalCarNumber",
    "internal car": "internalCarNumber",
    "location": "location",
    "location as applicable": "location",
    "status": "status",
    "incidence type": "incidenceType",
    "type": "type",
    "category": "category",
    "received date": "receivedDate",
    "part number": "partNumber",
    "part description": "partDescription",
    "part family": "partFamily",
    "cust. car #": "customerCarNumber",
    "cust car #": "customerCarNumber",
    "customer car #": "customerCarNumber",
    "reference #'s": "customerCarNumber",
    "reference #s": "customerCarNumber",
    "stop tag #": "stopTagNumber",
    "audit nc #": "auditNcNumber",
    "customer": "customer",
    "komatsu tracking": "komatsuTracking",
    "work order #": "workOrderNumber",
    "manufacture date": "manufactureDate",
    "quantity": "quantity",
    "problem description": "problemDescription",
    "department responsible": "departmentResponsible",
    "defect category": "defectCategory",
    "champion": "champion",
    "containment complete?": "containmentComplete",
    "containment complete": "containmentComplete",
    "corrective action prevention": "correctiveActionPrevention",
    "corrective action detection": "correctiveActionDetection",
    "proposed cost": "proposedCost",
    "cost approved?": "costApproved",
    "cost approved": "costApproved",
    "initial resp.": "initialResp",
    "initial resp": "initialResp",
    "final resp. due date": "finalRespDueDate",
    "final resp due date": "finalRespDueDate",
    "completed resp. actual": "completedRespActual",
    "completed resp actual": "completedRespActual",
    "# days to close": "daysToClose",
    "days to close": "daysToClose",
    "closed date": "closedDate",
    "employee id": "employeeId",
    "rma #": "rmaNumber",
    "rma number": "rmaNumber",
    "contact": "followUpContact",
    "follow up items": "followUpContact",
    "debit cost": "followUpDebitCost",
    "comments": "followUpComments",
    "follow up": "followUpComments",
}

_LINE_BREAKS = re.compile(r"[\r\n]+")
_WHITESPACE = re.compile(r"\s+")
_PARENTHESIZED = re.compile(r"\(.*?\)")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class MappingDiagnostic:
    """Non-fatal header mapping finding surfaced for user review.

    kind is "UNMATCHED_HEADERS" or "HEADER_FALLBACK".
    """
    kind: str
    message: str
    headers: tuple[str, ...] = ()


@dataclass
class HeaderMapping:
    mapping: dict[str, str] = field(default_factory=dict)  # raw header -> field
    unmatched: list[str] = field(default_factory=list)
    fallback: bool = False
    diagnostics: list[MappingDiagnostic] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.mapping)

    @property
    def matched(self) -> int:
        return 0 if self.fallback else len(self.mapping)


def normalize_header(header: str) -> str:
    """Normalize header text for alias lookup.

    >>> normalize_header("  Received Date\\n(MM/DD) ")
    'received date'
    """
    text = str(header).strip()
    text = _LINE_BREAKS.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    text = _PARENTHESIZED.sub("", text)
    return text.strip().lower()


def fallback_key(header: str) -> str:
    """Best-effort key for unrecognized spreadsheets: lowercase alphanumerics."""
    return _NON_ALNUM.sub("", str(header).lower())


def build_header_map(raw_headers: Iterable[str]) -> HeaderMapping:
    """Map raw header strings to canonical field names.

    Returns a HeaderMapping keyed by the original raw header. When not a
    single header matches, every non-empty header is mapped to its
    ``fallback_key`` and the result is flagged with a HEADER_FALLBACK
    diagnostic so the import stays possible but is not reported as clean.
    """
    headers = [h for h in raw_headers if h is not None]
    result = HeaderMapping()
    for raw in headers:
        canonical = HEADER_ALIASES.get(normalize_header(raw))
        if canonical is not None:
            result.mapping[raw] = canonical
            logger.debug(f"header matched: {raw!r} -> {canonical}")
        else:
            result.unmatched.append(raw)

    visible_unmatched = [h for h in result.unmatched if not str(h).startswith(PLACEHOLDER_PREFIX)]
    if visible_unmatched:
        result.diagnostics.append(
            MappingDiagnostic(
                kind="UNMATCHED_HEADERS",
                message=f"{len(visible_unmatched)} header(s) not recognized: {visible_unmatched[:10]}",
                headers=tuple(visible_unmatched),
            )
        )

    if not result.mapping:
        for raw in headers:
            if str(raw).strip() and not str(raw).startswith(PLACEHOLDER_PREFIX):
                key = fallback_key(raw)
                if key:
                    result.mapping[raw] = key
        result.fallback = True
        result.diagnostics.append(
            MappingDiagnostic(
                kind="HEADER_FALLBACK",
                message=(
                    "no headers matched the CAR log schema; importing with raw header keys "
                    f"({len(result.mapping)} column(s))"
                ),
                headers=tuple(result.mapping),
            )
        )
        logger.warning(result.diagnostics[-1].message)
    return result
