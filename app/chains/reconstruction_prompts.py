"""Prompt templates for the reconstruction strategies.

Templates are plain ``str.format`` strings; literal braces are doubled.
"""

SYSTEM_PROMPT = """\
You are a careful editor who rewrites arguments without changing who wrote them.

Rules that apply to every task:
- Keep the author's voice, register and point of view.
- Keep every name, number, date and quantity that appears in the source.
- Do not invent examples, names, studies or data the source does not contain.
- Output plain prose. No markdown headings, bullets, bold or code fences unless asked.
"""

DIRECT_INSTRUCTION_PROMPT = """\
Apply the following instructions to the text exactly as written.

INSTRUCTIONS:
{instructions}
{domain_line}
TEXT:
{text}

Return only the transformed text."""

DIAGNOSTIC_PROMPT = """\
Diagnose the main defect(s) in the passage below, then repair {scope} and nothing else.

Possible diagnoses (use these exact labels):
- vague-claim: the claim is too imprecise to evaluate
- weak-argument: the reasoning does not support the conclusion
- false-claim: the passage asserts something untrue
- obscure-but-sound: the reasoning is right but hard to follow
- needs-empirical-support: the claim needs real-world evidence
- elliptical: key steps of the argument are missing

{mode_rule}
{domain_line}{instructions_line}
Answer in exactly this format:
DIAGNOSIS: <label>[, <label> ...]
SUMMARY: <one sentence explaining the diagnosis>
REWRITE:
<the repaired passage>

PASSAGE:
{text}"""

DIAGNOSTIC_CONSERVATIVE_RULE = (
    "Mode: conservative. Name the single most salient defect and repair only that one; "
    "leave everything else as close to the original wording as possible."
)
DIAGNOSTIC_AGGRESSIVE_RULE = (
    "Mode: aggressive. Name every defect you find and repair each of them, point by point."
)
EMPIRICAL_SUPPORT_RULE = (
    "Evidence may be added only under needs-empirical-support, and only real, verifiable evidence."
)

OUTLINE_EXTRACTION_PROMPT = """\
Extract the structural outline of the document below.

Return JSON only:
{{"thesis": "...", "key_points": ["...", "..."], "key_terms": ["..."], "constraints": ["..."]}}

- thesis: the document's central claim in one sentence
- key_points: the main points in the order the document makes them
- key_terms: terms of art that must be used consistently
- constraints: anything a rewrite must keep (scope, stance, named entities, figures)
{instructions_line}
DOCUMENT:
{text}"""

OUTLINE_SECTION_PROMPT = """\
You are rewriting one section of a longer document. The outline below is fixed; every section
is written against it so the sections read as one document.

THESIS: {thesis}
KEY POINTS:
{key_points}
KEY TERMS: {key_terms}
CONSTRAINTS:
{constraints}

Write section {section_number} of {section_count}, covering this key point:
{key_point}

Mode: {aggressiveness}. {mode_rule}
{instructions_line}
SOURCE MATERIAL FOR THIS SECTION:
{region}

Return only the section text."""

OUTLINE_CONSERVATIVE_RULE = "Stay close to the source wording; fix only clarity and flow."
OUTLINE_AGGRESSIVE_RULE = "Strengthen the reasoning and fill gaps the outline implies, without new facts."

CROSS_CHUNK_PROMPT = """\
You are rewriting a long document one chunk at a time (chunk {chunk_number} of {chunk_count}).
The global state records what earlier chunks established. Stay consistent with it: same terms,
same claims, same decisions.

GLOBAL STATE:
{global_state}

Mode: {aggressiveness}. {mode_rule}
{instructions_line}
CHUNK:
{chunk}

Return JSON only:
{{"section_output": "<rewritten chunk>",
  "updated_state": {{"thesis": "<only if not yet set>", "key_points": ["<new points>"],
                    "key_terms": ["<new terms>"], "constraints": ["<new constraints>"],
                    "decisions": ["<choices later chunks must follow>"]}}}}"""

POSITION_BATCH_PROMPT = """\
Below is a numbered list of positions, each written as pipe-separated fields.
Apply the instructions to the list: select the positions they ask for and rewrite each selected
position as the instructions require. Keep the pipe-separated field layout.

INSTRUCTIONS:
{instructions}

POSITIONS:
{positions}

Return JSON only:
{{"selected": [{{"index": <position number>, "text": "<position text>"}}]}}"""

DEFAULT_POSITION_INSTRUCTIONS = (
    "Select every position and rewrite each one so it is stated clearly and precisely."
)

EXPANSION_SECTION_PROMPT = """\
You are expanding a document to about {target_words} words, one section at a time.
This is section {section_number} (about {estimated_sections} sections in total); write roughly
{section_words} words. So far {written_words} words have been written.

Mode: {aggressiveness}. {mode_rule}
{instructions_line}
SECTIONS ALREADY WRITTEN:
{previous_titles}

END OF THE PREVIOUS SECTION:
{previous_tail}

SOURCE DOCUMENT:
{text}

Start with a short title on its own line, then the section text. Do not repeat earlier sections."""

EXPANSION_CONSERVATIVE_RULE = "Develop only what the source already argues; add depth, not new claims."
EXPANSION_AGGRESSIVE_RULE = "Develop the argument fully: add analysis, objections and replies, and transitions."


def optional_line(label: str, value: str | None) -> str:
    """Render ``LABEL: value`` followed by a newline, or nothing when value is empty."""
    if not value:
        return ""
    return f"{label}: {value}\n"
