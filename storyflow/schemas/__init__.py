# Story Memory Schema Definitions
from .memory import (
    MemoryModel,
    KeyEvent,
    ForeshadowingMarker,
    ChapterSummary,
    CharacterKnowledgeState,
    Fact,
    SubplotStatus,
    TensionPoint,
    Subplot,
    SubplotTouch,
    OpenQuestion,
    StoryMemory,
    # Consistency report
    FactContradiction,
    SubplotWarning,
    # Retrieval output
    PovConstraint,
    SelectedSubplot,
    ContextBundle,
)

# Generation request/response schemas
from .generation import (
    ContextValidationError,
    NovelSpecification,
    CharacterBrief,
    PlotBeat,
    BaseContext,
    GenerationContext,
    ACTION_CONTEXTS,
    SUPPORTED_ACTIONS,
    parse_context,
    GenerationRequest,
    GenerationResponse,
    GenerationProgress,
    Usage,
)
