"""Strict parser for the DOYAKEN_STATUS block agents print at phase end.

Grammar::

    DOYAKEN_STATUS:
      PHASE_COMPLETE: true
      FILES_MODIFIED: 3
      TESTS_STATUS: pass
      CONFIDENCE: high
      REMAINING_WORK: none

The block starts at a line containing the marker and runs until the first
blank or non-indented line.  When an agent prints several blocks the last one
wins.
"""

from __future__ import annotations

from doyaken.orchestrator.errors import MalformedStatusBlock
from doyaken.orchestrator.models import StatusBlock

STATUS_MARKER = "DOYAKEN_STATUS:"
TESTS_STATUS_VALUES = frozenset({"pass", "fail", "skip", "n/a"})
CONFIDENCE_VALUES = frozenset({"high", "medium", "low"})
KNOWN_KEYS = frozenset(
    {
        "PHASE_COMPLETE",
        "FILES_MODIFIED",
        "TESTS_STATUS",
        "CONFIDENCE",
        "REMAINING_WORK",
        "BLOCKERS",
    },
)

STATUS_BLOCK_INSTRUCTIONS = """\
When you are finished, print this block as the last thing in your output,
with each field indented by two spaces:

DOYAKEN_STATUS:
  PHASE_COMPLETE: true
  FILES_MODIFIED: <number of files you changed>
  TESTS_STATUS: pass | fail | skip | n/a
  CONFIDENCE: high | medium | low
  REMAINING_WORK: <none, or a short description>
  BLOCKERS: <none, or what stops you>

Use PHASE_COMPLETE: false only if you could not finish this phase.
"""


def parse_status_block(output: str) -> StatusBlock:
    """Parse the last status block in ``output``.

    Raises MalformedStatusBlock when the block is missing, has unknown or
    duplicate keys, carries invalid values, or reports an incomplete phase.
    """

    lines = output.splitlines()
    starts = [index for index, line in enumerate(lines) if STATUS_MARKER in line]
    if not starts:
        raise MalformedStatusBlock("Output has no DOYAKEN_STATUS block")

    fields: dict[str, str] = {}
    for line in lines[starts[-1] + 1 :]:
        if not line.strip() or not line[0].isspace():
            break
        key, separator, value = line.strip().partition(":")
        key = key.strip().upper()
        if not separator:
            raise MalformedStatusBlock(f"Status line without a value: {line.strip()!r}")
        if key not in KNOWN_KEYS:
            raise MalformedStatusBlock(f"Unknown status key: {key}")
        if key in fields:
            raise MalformedStatusBlock(f"Duplicate status key: {key}")
        fields[key] = value.strip()

    return _build_status_block(fields)


def _build_status_block(fields: dict[str, str]) -> StatusBlock:
    if "PHASE_COMPLETE" not in fields:
        raise MalformedStatusBlock("Status block is missing PHASE_COMPLETE")
    complete = fields["PHASE_COMPLETE"].lower()
    if complete not in {"true", "false"}:
        raise MalformedStatusBlock(f"PHASE_COMPLETE must be true or false, got {complete!r}")
    if complete == "false":
        detail = fields.get("BLOCKERS") or fields.get("REMAINING_WORK") or "no details"
        raise MalformedStatusBlock(f"Agent reported PHASE_COMPLETE: false ({detail})")

    files_modified: int | None = None
    if "FILES_MODIFIED" in fields:
        try:
            files_modified = int(fields["FILES_MODIFIED"])
        except ValueError as error:
            raise MalformedStatusBlock(
                f"FILES_MODIFIED must be an integer, got {fields['FILES_MODIFIED']!r}",
            ) from error
        if files_modified < 0:
            raise MalformedStatusBlock("FILES_MODIFIED must not be negative")

    tests_status = _choice(fields, "TESTS_STATUS", TESTS_STATUS_VALUES)
    confidence = _choice(fields, "CONFIDENCE", CONFIDENCE_VALUES)
    return StatusBlock(
        phase_complete=True,
        files_modified=files_modified,
        tests_status=tests_status,
        confidence=confidence,
        remaining_work=fields.get("REMAINING_WORK") or None,
        blockers=fields.get("BLOCKERS") or None,
    )


def _choice(fields: dict[str, str], key: str, allowed: frozenset[str]) -> str | None:
    if key not in fields:
        return None
    value = fields[key].lower()
    if value not in allowed:
        raise MalformedStatusBlock(
            f"{key} must be one of {', '.join(sorted(allowed))}, got {fields[key]!r}",
        )
    return value
