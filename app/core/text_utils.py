"""Text utilities: word counts, instruction parsing, input shape detection."""

import math
import re
from dataclasses import dataclass, field

# Expansion intent
_EXPANSION_VERB_RE = re.compile(r"\b(expand(?:ed|ing)?|increase|lengthen|elongate)\b", re.IGNORECASE)
_CONTRACTION_VERB_RE = re.compile(
    r"\b(summari[sz]e|condense|shorten|compress|reduce|trim|cut)\b", re.IGNORECASE
)
_TARGET_CUE_RE = re.compile(
    r"\b(?:to|into|least|approximately|about|around|roughly|target(?:\s+of)?|total(?:\s+of)?)"
    r"\s+~?\s*(\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s*(k)?\s*words?\b",
    re.IGNORECASE,
)
_WORD_COUNT_RE = re.compile(r"(\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s*(k)?\s*words?\b", re.IGNORECASE)
_INCREASE_BY_PCT_RE = re.compile(r"\bincrease\b[^.%\d]{0,40}?\bby\s+(\d+(?:\.\d+)?)\s*%", re.IGNORECASE)
_PCT_LONGER_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%\s+(?:longer|more)\b", re.IGNORECASE)
_TO_PCT_RE = re.compile(r"\bto\s+(\d+(?:\.\d+)?)\s*%|(\d+(?:\.\d+)?)\s*%\s+of\b", re.IGNORECASE)
_MULTIPLIER_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:x|×|times)\b", re.IGNORECASE)
_MULTIPLIER_WORDS = {"double": 2.0, "triple": 3.0, "quadruple": 4.0}

# Position lists
_TABLE_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?$")
POSITION_LIST_MIN_RATIO = 0.8

# Entity / claim lock
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_CAPITALIZED_RE = re.compile(r"^[A-Z][A-Za-z'\-]+$")
_NUMBER_RE = re.compile(r"\b\d+(?:[.,]\d+)*%?")


def count_words(text: str) -> int:
    """Count whitespace-delimited words."""
    if not text:
        return 0
    return len(text.split())


def normalize_whitespace(text: str) -> str:
    """Collapse every run of whitespace to a single space."""
    return " ".join(text.split())


# =============================================================================
# Expansion instructions
# =============================================================================


@dataclass(frozen=True)
class ExpansionTarget:
    """Target output length parsed from user instructions."""

    target_word_count: int
    source: str  # explicit | percentage | multiplier | default-small | default-ratio


def _parse_count(number: str, thousands: str | None) -> float:
    value = float(number.replace(",", ""))
    if thousands:
        value *= 1000
    return value


def has_expansion_instructions(instructions: str | None) -> bool:
    """Return True when the instructions ask for longer output.

    An expansion verb ("expand", "increase", ...) or an explicit target such as
    "to 5000 words" qualifies, unless the instructions only ask to shorten.
    """
    if not instructions or not instructions.strip():
        return False

    has_verb = bool(_EXPANSION_VERB_RE.search(instructions))
    has_target = bool(_TARGET_CUE_RE.search(instructions))
    if not has_verb and not has_target:
        return False
    if not has_verb and _CONTRACTION_VERB_RE.search(instructions):
        return False
    return True


def parse_expansion_instructions(
    instructions: str | None,
    input_word_count: int,
    small_input_words: int = 1000,
    default_target: int = 5000,
    large_input_ratio: float = 1.5,
) -> ExpansionTarget:
    """
    Work out the target word count for an expansion request.

    Precedence: explicit word count, percentage, multiplier, then defaults
    (fixed target for small inputs, ratio of the input otherwise).

    Args:
        instructions: Raw user instructions
        input_word_count: Word count of the text being expanded
        small_input_words: Inputs below this get ``default_target``
        default_target: Target used for small inputs without an explicit number
        large_input_ratio: Multiplier applied to larger inputs without a target

    Returns:
        ExpansionTarget with the resolved count and how it was derived
    """
    text = instructions or ""

    match = _TARGET_CUE_RE.search(text) or _WORD_COUNT_RE.search(text)
    if match:
        target = _parse_count(match.group(1), match.group(2))
        if target >= 1:
            return ExpansionTarget(int(math.ceil(target)), "explicit")

    pct_match = _INCREASE_BY_PCT_RE.search(text) or _PCT_LONGER_RE.search(text)
    if pct_match and input_word_count > 0:
        pct = float(pct_match.group(1))
        return ExpansionTarget(int(math.ceil(input_word_count * (1 + pct / 100))), "percentage")

    to_pct = _TO_PCT_RE.search(text)
    if to_pct and input_word_count > 0:
        pct = float(to_pct.group(1) or to_pct.group(2))
        return ExpansionTarget(int(math.ceil(input_word_count * pct / 100)), "percentage")

    if input_word_count > 0:
        mult_match = _MULTIPLIER_RE.search(text)
        if mult_match:
            return ExpansionTarget(
                int(math.ceil(input_word_count * float(mult_match.group(1)))), "multiplier"
            )
        lowered = text.lower()
        for word, factor in _MULTIPLIER_WORDS.items():
            if re.search(rf"\b{word}\b", lowered):
                return ExpansionTarget(int(math.ceil(input_word_count * factor)), "multiplier")

    if input_word_count < small_input_words:
        return ExpansionTarget(default_target, "default-small")
    return ExpansionTarget(int(math.ceil(input_word_count * large_input_ratio)), "default-ratio")


# =============================================================================
# Position lists
# =============================================================================


def is_table_separator(line: str) -> bool:
    """Markdown table separator rows (``|---|---|``) carry no content."""
    return bool(_TABLE_SEPARATOR_RE.match(line.strip()))


def split_position_fields(line: str) -> list[str]:
    """Split a pipe-delimited line into trimmed fields, ignoring outer pipes."""
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [part.strip() for part in stripped.split("|")]


def _is_position_line(line: str) -> bool:
    if "|" not in line:
        return False
    fields = split_position_fields(line)
    return len(fields) >= 2 and all(fields)


def is_position_list(text: str | None) -> bool:
    """Detect input shaped as several lines of pipe-delimited fields."""
    if not text:
        return False
    lines = [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not is_table_separator(line)
    ]
    if len(lines) < 2:
        return False
    position_lines = sum(1 for line in lines if _is_position_line(line))
    if position_lines < 2:
        return False
    return position_lines / len(lines) >= POSITION_LIST_MIN_RATIO


# =============================================================================
# Output hygiene
# =============================================================================


def clean_markup(text: str) -> str:
    """Strip markdown decoration from provider output, keeping plain prose."""
    if not text:
        return ""
    cleaned = re.sub(r"```[a-zA-Z]*\n?([\s\S]*?)```", r"\1", text)
    cleaned = re.sub(r"\*{1,3}([^*\n]+)\*{1,3}", r"\1", cleaned)
    cleaned = re.sub(r"^#{1,6}\s+", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"`([^`]+)`", r"\1", cleaned)
    cleaned = re.sub(r"~~([^~]+)~~", r"\1", cleaned)
    cleaned = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", cleaned)
    cleaned = re.sub(r"^>\s+", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


# =============================================================================
# Entity lock / claim lock
# =============================================================================


@dataclass
class LockReport:
    """Names and numbers that did not survive a rewrite, or appeared from nowhere."""

    missing_entities: list[str] = field(default_factory=list)
    missing_numbers: list[str] = field(default_factory=list)
    introduced_numbers: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing_entities or self.missing_numbers or self.introduced_numbers)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "missing_entities": self.missing_entities,
            "missing_numbers": self.missing_numbers,
            "introduced_numbers": self.introduced_numbers,
        }


def extract_named_entities(text: str) -> list[str]:
    """Capitalized words that are not sentence-initial, in first-seen order."""
    seen: dict[str, None] = {}
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        words = sentence.split()
        for word in words[1:]:
            token = word.strip(".,;:!?()[]\"'")
            if token != "I" and _CAPITALIZED_RE.match(token):
                seen.setdefault(token, None)
    return list(seen)


def extract_numbers(text: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in _NUMBER_RE.finditer(text):
        seen.setdefault(match.group(0), None)
    return list(seen)


def find_lock_violations(source: str, output: str, allow_new_numbers: bool = False) -> LockReport:
    """
    Check that a rewrite kept the source's names and counts.

    Args:
        source: Original text
        output: Rewritten text
        allow_new_numbers: Skip the introduced-number check (empirical support
            legitimately adds figures)

    Returns:
        LockReport listing violations; ``report.ok`` when there are none
    """
    report = LockReport()
    for entity in extract_named_entities(source):
        if not re.search(rf"\b{re.escape(entity)}\b", output):
            report.missing_entities.append(entity)

    source_numbers = extract_numbers(source)
    output_numbers = extract_numbers(output)
    report.missing_numbers = [n for n in source_numbers if n not in output_numbers]
    if not allow_new_numbers:
        report.introduced_numbers = [n for n in output_numbers if n not in source_numbers]
    return report
