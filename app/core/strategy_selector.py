"""Strategy selection: map input size, instructions and shape to a reconstruction plan."""

from app.core.config import Settings, get_settings
from app.core.errors import InvalidInput
from app.core.logging import get_logger
from app.core.schemas_reconstruction import (
    Aggressiveness,
    CrossChunkPlan,
    DiagnosticPlan,
    DirectInstructionPlan,
    OutlineFirstPlan,
    PositionListPlan,
    StrategyPlan,
    UniversalExpansionPlan,
)
from app.core.text_utils import (
    has_expansion_instructions,
    is_position_list,
    parse_expansion_instructions,
)

logger = get_logger(__name__)


def _multi_pass_aggressiveness(fidelity_level: str | None) -> Aggressiveness:
    return "conservative" if fidelity_level == "conservative" else "aggressive"


def select_strategy(
    input_word_count: int,
    raw_instructions: str | None,
    raw_text: str | None,
    fidelity_level: str | None = None,
    settings: Settings | None = None,
) -> StrategyPlan:
    """
    Pick the reconstruction strategy for a request. First match wins:

    1. expansion instructions -> universal expansion
    2. pipe-delimited position list -> position list
    3. medium input -> outline-first
    4. long input -> cross-chunk
    5. any other instructions -> direct instruction
    6. otherwise -> diagnostic reconstruction

    Args:
        input_word_count: Word count of the document
        raw_instructions: User instructions, possibly empty
        raw_text: Document text, possibly empty
        fidelity_level: "conservative" or "aggressive" when the caller asked for one
        settings: Threshold configuration (defaults to process settings)

    Returns:
        A plan model tagged with its strategy kind

    Raises:
        InvalidInput: If both text and instructions are empty
    """
    settings = settings or get_settings()
    instructions = (raw_instructions or "").strip()
    text = (raw_text or "").strip()

    if not text and not instructions:
        raise InvalidInput("Either text or custom instructions must be provided")

    if instructions and has_expansion_instructions(instructions):
        target = parse_expansion_instructions(
            instructions,
            input_word_count,
            small_input_words=settings.SMALL_INPUT_WORDS,
            default_target=settings.DEFAULT_EXPANSION_TARGET,
            large_input_ratio=settings.LARGE_INPUT_EXPANSION_RATIO,
        )
        plan: StrategyPlan = UniversalExpansionPlan(
            target_word_count=target.target_word_count,
            target_source=target.source,
            aggressiveness=_multi_pass_aggressiveness(fidelity_level),
        )
    elif is_position_list(text):
        plan = PositionListPlan()
    elif settings.OUTLINE_FIRST_MIN_WORDS <= input_word_count <= settings.CROSS_CHUNK_MIN_WORDS:
        plan = OutlineFirstPlan(aggressiveness=_multi_pass_aggressiveness(fidelity_level))
    elif input_word_count > settings.CROSS_CHUNK_MIN_WORDS:
        plan = CrossChunkPlan(
            aggressiveness=_multi_pass_aggressiveness(fidelity_level),
            max_words_per_chunk=settings.CROSS_CHUNK_MAX_WORDS,
        )
    elif instructions:
        plan = DirectInstructionPlan()
    else:
        plan = DiagnosticPlan(aggressiveness="aggressive" if fidelity_level == "aggressive" else "conservative")

    logger.debug(f"Selected strategy {plan.kind} for {input_word_count} words")
    return plan
