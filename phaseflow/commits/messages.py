"""Canonical ``[PERSONA] [STEP-nnn] description`` commit messages."""

from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, Field

KNOWN_PERSONAS = frozenset(
    {
        "DEVELOPER",
        "ARCHITECT",
        "PM",
        "QA",
        "DEVOPS",
        "SECURITY",
        "RELEASE",
        "RECOVERY",
        "ORCHESTRATOR",
    }
)

MESSAGE_PATTERN = re.compile(r"^\[([A-Za-z]+)\] \[STEP-([0-9A-Z]+)\] (.+)$")

_CORRECT = re.compile(r"^\[([A-Z]+)\] \[STEP-([0-9A-Z]+)\] (.+)$")
_MISSING_STEP_PREFIX = re.compile(r"^\[([A-Za-z]+)\] \[([0-9]+)\] (.+)$")
_LOWERCASE_PERSONA = re.compile(r"^\[([A-Za-z]+)\] \[STEP-([0-9A-Z]+)\] (.+)$", re.IGNORECASE)
_NO_BRACKETS = re.compile(r"^([A-Za-z]+) STEP-([0-9A-Z]+) (.+)$")
_BARE_TYPE = re.compile(r"^([A-Za-z]+): (.+)$")

GENERATED_STEP_ID = "001"


class MessageValidation(BaseModel):
    valid: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    persona: Optional[str] = None
    step_id: Optional[str] = None
    description: Optional[str] = None


class MessageCorrection(BaseModel):
    corrected: bool = False
    original_message: str
    corrected_message: str
    corrections: List[str] = Field(default_factory=list)


def format_message(persona: str, step_id: int | str, description: str) -> str:
    """Build ``[PERSONA] [STEP-nnn] description``.

    Persona is uppercased, the step id zero-padded to three digits, double
    quotes escaped and newlines folded into spaces.
    """
    clean = (
        description.replace('"', '\\"').replace("\r\n", " ").replace("\n", " ").strip()
    )
    return f"[{persona.upper()}] [STEP-{str(step_id).zfill(3)}] {clean}"


def _validate_persona(persona: str, result: MessageValidation) -> None:
    if persona != persona.upper():
        result.errors.append("Persona must be uppercase")
    if persona.upper() not in KNOWN_PERSONAS:
        result.warnings.append(f"Persona '{persona}' is not a standard persona")


def _validate_step_id(step_id: str, result: MessageValidation) -> None:
    if not step_id.isdigit():
        result.errors.append("Step ID must be a 3-digit number (001-999)")
        return
    if len(step_id) < 3:
        result.warnings.append("Step ID should be 3 digits (pad with zeros)")
    elif len(step_id) > 3:
        result.warnings.append("Step ID should be 3 digits (consider shortening)")
    value = int(step_id)
    if value < 1 or value > 999:
        result.warnings.append("Step ID should be between 001 and 999")


def _validate_description(description: str, result: MessageValidation) -> None:
    text = description.strip()
    if not text:
        result.errors.append("Description is required")
        return
    if len(text) < 10:
        result.warnings.append("Description is very short - consider adding more detail")
    if len(text) > 100:
        result.warnings.append("Description is very long - consider shortening")
    lowered = text.lower()
    if "fix" in lowered and len(text) < 20:
        result.warnings.append('Generic "fix" description - consider being more specific')
    if "update" in lowered and len(text) < 25:
        result.warnings.append('Generic "update" description - consider being more specific')


def validate_message(message: str) -> MessageValidation:
    """Check ``message`` against the canonical pattern.

    Unknown personas, odd step ids and description length only produce
    warnings; a pattern mismatch, lowercase persona, non-numeric step id or
    empty description are errors.
    """
    result = MessageValidation()
    match = MESSAGE_PATTERN.match(message)
    if not match:
        result.errors.append(
            "Message does not match required pattern: [PERSONA] [STEP-ID] Description"
        )
        return result

    persona, step_id, description = match.groups()
    _validate_persona(persona, result)
    _validate_step_id(step_id, result)
    _validate_description(description, result)

    result.persona = persona
    result.step_id = step_id
    result.description = description
    result.valid = not result.errors
    return result


def format_error_report(validation: MessageValidation) -> str:
    if validation.valid:
        return "Commit message format is valid."

    lines = ["Commit Message Format Validation Failed:", ""]
    if validation.errors:
        lines.append("ERRORS:")
        lines += [f"  {i}. {err}" for i, err in enumerate(validation.errors, 1)]
        lines.append("")
    if validation.warnings:
        lines.append("WARNINGS:")
        lines += [f"  {i}. {warn}" for i, warn in enumerate(validation.warnings, 1)]
        lines.append("")
    lines += [
        "REQUIRED FORMAT:",
        "  [PERSONA] [STEP-ID] Description",
        "",
        "EXAMPLES:",
        "  [DEVELOPER] [STEP-001] Implement user authentication",
        "  [ARCHITECT] [STEP-042] Design database schema",
        "",
        "RULES:",
        "  - PERSONA: uppercase, one of " + ", ".join(sorted(KNOWN_PERSONAS)),
        "  - STEP-ID: 3-digit number (001-999)",
        "  - Description: meaningful and concise",
    ]
    return "\n".join(lines)


def correct_message_format(message: str) -> MessageCorrection:
    """Rewrite common near-misses into canonical form.

    Returns the message unchanged (``corrected=False``) when it is already
    canonical or matches none of the known near-miss shapes.
    """
    text = message.strip()
    result = MessageCorrection(original_message=message, corrected_message=message)

    if _CORRECT.match(text):
        return result

    match = _MISSING_STEP_PREFIX.match(text)
    if match:
        persona, step_id, description = match.groups()
        result.corrected_message = f"[{persona.upper()}] [STEP-{step_id.zfill(3)}] {description}"
        result.corrections.append("Added STEP prefix to step ID")
        if persona != persona.upper():
            result.corrections.append("Converted persona to uppercase")
        result.corrected = True
        return result

    match = _LOWERCASE_PERSONA.match(text)
    if match:
        persona, step_id, description = match.groups()
        result.corrected_message = f"[{persona.upper()}] [STEP-{step_id.upper()}] {description}"
        result.corrections.append("Converted persona to uppercase")
        result.corrected = True
        return result

    match = _NO_BRACKETS.match(text)
    if match:
        persona, step_id, description = match.groups()
        result.corrected_message = f"[{persona.upper()}] [STEP-{step_id}] {description}"
        result.corrections.append("Added brackets around persona and step ID")
        if persona != persona.upper():
            result.corrections.append("Converted persona to uppercase")
        result.corrected = True
        return result

    match = _BARE_TYPE.match(text)
    if match:
        persona, description = match.groups()
        result.corrected_message = f"[{persona.upper()}] [STEP-{GENERATED_STEP_ID}] {description}"
        result.corrections.append("Generated step ID and added proper formatting")
        result.corrected = True
        return result

    return result
