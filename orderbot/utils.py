import re
from datetime import datetime, timezone


def normalize_command(text: str) -> str:
    """Purpose: Normalize free-form text for command matching ("done", "place order").
    Inputs/Outputs: Input is a raw string; output is lowercase text with whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses regex; called by the state machine and the dispatcher.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: "Place  Order" or " DONE " would fall through to the item parser or re-prompts.
    Testing Notes: Validate mixed case and repeated inner spaces collapse to one form.
    """
    # Lowercase and collapse runs of whitespace.
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip().lower()


def mask_number(value: object) -> str:
    """Purpose: Mask phone-number-like values for safe logging.
    Inputs/Outputs: Input is any value; output is a masked string with last digits only.
    Side Effects / State: None.
    Dependencies: Uses regex digit extraction.
    Failure Modes: Non-numeric or short inputs yield a generic mask.
    If Removed: Logs expose customer and vendor phone numbers.
    Testing Notes: Verify outputs for short and long numeric strings.
    """
    # Keep only the last digits while hiding the rest.
    if value is None:
        return ""
    digits = re.findall(r"\d", str(value))
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
