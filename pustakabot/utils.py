import re
from typing import Optional

DEFAULT_DISPLAY_NAME = "Pemustaka"
MAX_DISPLAY_NAME = 20

_UNSAFE_NAME_CHARS = re.compile(r"[^\w\s.\-@]")


def normalize(text: str) -> str:
    """Purpose: Normalize an inbound message for command and keyword matching.
    Inputs/Outputs: Input is a raw string; output is the lowercased, trimmed string.
    Side Effects / State: None; pure function.
    Dependencies: None; called by the dialogue engine and the static resolver.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Menu commands and keyword replies stop matching mixed-case input.
    Testing Notes: "  MENU " must normalize to "menu".
    """
    if not text:
        return ""
    return text.lower().strip()


def sanitize_display_name(raw_name: Optional[str]) -> str:
    """Purpose: Make a gateway-supplied profile name safe to echo in a greeting.
    Inputs/Outputs: Input is an optional raw name; output is a cleaned display name.
    Side Effects / State: None; pure function.
    Dependencies: Uses _UNSAFE_NAME_CHARS; called when a new session greets the sender.
    Failure Modes: Falls back to DEFAULT_DISPLAY_NAME for empty, phone-number, or
        fully-stripped names.
    If Removed: Emoji, markup, or very long names leak into the welcome bubble.
    Testing Notes: "+62812" -> "Pemustaka"; "<b>Budi</b>" keeps only safe characters.
    """
    # Phone-number style names carry no useful display value.
    if not raw_name or raw_name.startswith("+"):
        return DEFAULT_DISPLAY_NAME
    cleaned = _UNSAFE_NAME_CHARS.sub("", raw_name)
    cleaned = cleaned.replace("<", "&lt;").replace(">", "&gt;")
    if len(cleaned) > MAX_DISPLAY_NAME:
        cleaned = cleaned[:MAX_DISPLAY_NAME] + "..."
    if not cleaned.strip():
        return DEFAULT_DISPLAY_NAME
    return cleaned


def mask_sender(sender_id: str) -> str:
    """Hide all but the last four characters of a sender id for logging."""
    if not sender_id:
        return "-"
    if len(sender_id) <= 4:
        return "*" * len(sender_id)
    return "*" * (len(sender_id) - 4) + sender_id[-4:]
