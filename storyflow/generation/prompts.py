"""
Prompt construction: turns a typed request context plus the retrieved
context bundle into the user prompt for the backend.

``build_context_block`` renders project data and story memory as Markdown
sections. Each action has a builder in ``ACTION_PROMPTS`` that wraps the
block with task instructions. The builder table must cover exactly the
actions that have a context model; this is checked on import.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Callable, Dict, List

from storyflow.schemas.generation import (
    ACTION_CONTEXTS,
    BaseContext,
    BrainstormContext,
    ChapterContext,
    CharacterContext,
    ContinueWritingContext,
    DialogueContext,
    MarketingContext,
    MemoryUpkeepContext,
    PlotContext,
    SceneContext,
    SelectionContext,
    SuggestionContext,
    WikiContext,
)
from storyflow.schemas.memory import ContextBundle

LANGUAGE_NAMES = {"en": "English", "de": "German", "fr": "French", "es": "Spanish", "it": "Italian"}


def _join(items, sep: str = ", ", empty: str = "Not specified") -> str:
    items = [i for i in items if i]
    return sep.join(items) if items else empty


# ---------------------------------------------------------------------------
# Context block
# ---------------------------------------------------------------------------

def build_context_block(ctx: BaseContext, bundle: ContextBundle | None = None) -> str:
    parts: List[str] = []
    names = {c.id: c.name for c in ctx.characters}

    spec = ctx.specification
    if spec is not None:
        parts.append(
            "## Novel Specification\n"
            f"- Title: {spec.working_title}\n"
            f"- Genre: {_join(spec.genre)}\n"
            f"- Subgenre: {_join(spec.subgenre)}\n"
            f"- Target Audience: {spec.target_audience}\n"
            f"- POV: {spec.pov}\n"
            f"- Tense: {spec.tense}\n"
            f"- Tone: {spec.tone or 'Not specified'}\n"
            f"- Themes: {_join(spec.themes)}\n"
            f"- Word Count Target: {spec.target_word_count}"
        )

    if ctx.characters:
        parts.append("\n## Characters")
        for c in ctx.characters:
            parts.append(
                f"### {c.name} ({c.role})\n"
                f"- Age: {c.age or 'Unknown'}\n"
                f"- Description: {c.physical_description or 'Not described'}\n"
                f"- Personality: {_join(c.personality)}\n"
                f"- Speech Patterns: {c.speech_patterns or 'Standard'}"
            )

    if bundle is not None:
        parts.extend(_memory_sections(bundle, names))

    return "\n".join(parts)


def _memory_sections(bundle: ContextBundle, names: Dict[str, str]) -> List[str]:
    parts: List[str] = []

    if bundle.summaries:
        parts.append("\n## Story Memory - Previous Chapter Summaries")
        for s in bundle.summaries:
            flag = " (ends with cliffhanger)" if s.cliffhanger else ""
            parts.append(
                f"### Chapter {s.chapter_number}{flag}\n"
                f"{s.summary}\n"
                f"- Key events: {_join([e.event for e in s.key_events], '; ', 'None')}\n"
                f"- Characters present: {_join([names.get(c, c) for c in s.characters_present], empty='None')}"
            )

    if bundle.character_states:
        parts.append("\n## Character Knowledge States (what characters know/believe)")
        for state in bundle.character_states:
            parts.append(
                f"### {names.get(state.character_id, state.character_id)} (as of Chapter {state.as_of_chapter})\n"
                f"- Knows: {_join(state.known_facts[:5], '; ', 'Nothing tracked')}\n"
                f"- Believes: {_join(state.beliefs[:3], '; ', 'No beliefs tracked')}\n"
                f"- Current goals: {_join(state.active_goals, '; ', 'None')}\n"
                f"- Emotional state: {state.emotional_state or 'Unknown'}"
            )

    if bundle.facts:
        parts.append("\n## Established Facts (maintain these for continuity)")
        by_subject: "OrderedDict[str, List[str]]" = OrderedDict()
        for fact in bundle.facts:
            label = fact.subject_name or names.get(fact.subject_id, fact.subject_id)
            by_subject.setdefault(label, []).append(fact.assertion)
        for subject, assertions in by_subject.items():
            parts.append(f"- {subject}: {'; '.join(assertions)}")

    if bundle.subplots:
        parts.append("\n## Active Subplots (consider weaving these in)")
        for sel in bundle.subplots:
            sp = sel.subplot
            parts.append(
                f"- {sp.name} ({sp.status.value}, last seen chapter {sel.last_touched_chapter}): "
                f"{sp.description or 'No description'}"
            )

    if bundle.open_questions:
        parts.append("\n## Reader's Open Questions (maintain these mysteries)")
        parts.extend(f"- {q}" for q in bundle.open_questions)

    if bundle.unresolved_setups:
        parts.append("\n## Foreshadowing/Setups (consider paying off)")
        parts.extend(f"- {s}" for s in bundle.unresolved_setups)

    pov = bundle.pov_constraints
    if pov.cannot_know or pov.must_remember or pov.emotional_state:
        parts.append("\n## POV Character Constraints")
        if pov.cannot_know:
            parts.append(
                "CANNOT reference (character doesn't know): "
                + "; ".join(f.assertion for f in pov.cannot_know)
            )
        if pov.must_remember:
            parts.append(f"Should remember: {'; '.join(pov.must_remember)}")
        if pov.emotional_state:
            parts.append(f"Current emotional context: {pov.emotional_state}")

    return parts


# ---------------------------------------------------------------------------
# Action builders
# ---------------------------------------------------------------------------

PromptBuilder = Callable[[BaseContext, str], str]


def _language_line(ctx: BaseContext) -> str:
    if ctx.novel_language == "en":
        return ""
    return f"\nWrite in {LANGUAGE_NAMES[ctx.novel_language]}."


def _chapter(ctx: ChapterContext, block: str) -> str:
    beats = "\n".join(f"- {b.title}: {b.summary}" for b in ctx.plot_beats)
    draft = ctx.action == "generate-chapter-draft"
    return (
        f"{'Write a first draft of' if draft else 'Write a complete'} chapter {ctx.current_chapter or ''} for this novel.\n\n"
        f"{block}\n\n"
        + (f"Chapter title: {ctx.title}\n" if ctx.title else "")
        + (f"Synopsis: {ctx.synopsis}\n" if ctx.synopsis else "")
        + (f"Chapter outline to follow:\n{ctx.outline}\n" if ctx.outline else "")
        + (f"Plot beats:\n{beats}\n" if beats else "")
        + f"Target word count: {ctx.target_word_count}\n\n"
        "Write the full chapter prose, maintaining the specified POV and tense throughout.\n"
        "Start directly with the narrative - do not include chapter numbers or titles."
        + _language_line(ctx)
    )


def _scene(ctx: SceneContext, block: str) -> str:
    details = "\n".join(
        line for line in (
            f"- Title: {ctx.title}" if ctx.title else "",
            f"- Summary: {ctx.summary}" if ctx.summary else "",
            f"- Setting: {ctx.setting}" if ctx.setting else "",
            f"- Goal: {ctx.scene_goal}" if ctx.scene_goal else "",
            f"- Conflict: {ctx.conflict}" if ctx.conflict else "",
            f"- Emotional arc: {ctx.opening_emotion} -> {ctx.closing_emotion}"
            if ctx.opening_emotion or ctx.closing_emotion else "",
        ) if line
    ) or "Write an engaging scene that advances the plot."
    if ctx.action == "generate-scene":
        ask = ("Plan this scene as a blueprint: opening image, goal, conflict, turn, "
               "outcome and closing hook, one short paragraph each.")
    else:
        ask = ("Write vivid, engaging prose that brings this scene to life in about "
               f"{ctx.target_word_count} words. Maintain the specified POV and tense throughout.")
    previous = f"\n\n## Previous Content\n{ctx.previous_content}" if ctx.previous_content else ""
    return f"Write a scene for this novel.\n\n{block}{previous}\n\nScene details:\n{details}\n\n{ask}{_language_line(ctx)}"


def _continue(ctx: ContinueWritingContext, block: str) -> str:
    direction = f"\nDirection: {ctx.direction}" if ctx.direction else ""
    return (
        "Continue writing from where this text ends, maintaining the same voice, style, POV, and tense.\n\n"
        f"{block}\n\n"
        f'Text to continue from:\n"{ctx.existing_content}"\n{direction}\n'
        f"Continue the narrative naturally. Write approximately {ctx.target_word_count} words."
        + _language_line(ctx)
    )


_SELECTION_ASKS = {
    "expand-selection": (
        "Expand the following text with more detail, description, and depth while maintaining "
        "the same voice, style, POV, and tense.",
        "Text to expand",
        "Provide the expanded version only, without any commentary or explanation.",
    ),
    "condense-selection": (
        "Condense the following text to be more concise while preserving the essential meaning, "
        "voice, and style.",
        "Text to condense",
        "Provide the condensed version only, without any commentary or explanation.",
    ),
    "rewrite-selection": (
        "Rewrite the following text with different phrasing while maintaining the same meaning, "
        "tone, and style.",
        "Text to rewrite",
        "Provide the rewritten version only, without any commentary or explanation.",
    ),
}


def _selection(ctx: SelectionContext, block: str) -> str:
    surrounding = f"\n\nSurrounding text:\n{ctx.surrounding_context}" if ctx.surrounding_context else ""
    notes = f"\nAuthor's instructions: {ctx.instructions}" if ctx.instructions else ""
    if ctx.action == "generate-alternatives":
        n = ctx.number_of_alternatives
        return (
            f"Generate {n} alternative versions of the following text, each with a different approach "
            "while maintaining the same general meaning.\n\n"
            f"{block}{surrounding}\n\n"
            f'Text to rewrite:\n"{ctx.selected_text}"\n{notes}\n'
            f'Provide exactly {n} alternatives, separated by "---" on its own line. No numbering or labels.'
        )
    ask, label, tail = _SELECTION_ASKS[ctx.action]
    return f'{ask}\n\n{block}{surrounding}\n\n{label}:\n"{ctx.selected_text}"\n{notes}\n{tail}'


def _character(ctx: CharacterContext, block: str) -> str:
    if ctx.action == "deepen-character":
        who = ctx.character.name if ctx.character else "this character"
        return (
            f"Deepen the profile of {who}. Focus: {ctx.aspect_to_deepen}.\n\n"
            f"{block}\n\n"
            "Add concrete backstory events, contradictions in personality, a clear want versus need, "
            "and voice notes with two sample lines of dialogue."
        )
    archetype = f" based on the {ctx.archetype} archetype" if ctx.archetype else ""
    return (
        f"Create a new {ctx.role} character{archetype} for this novel.\n\n"
        f"{block}\n\n"
        "Include name, age, physical description, personality traits, backstory, motivation, "
        "flaws, arc, and speech patterns."
    )


def _dialogue(ctx: DialogueContext, block: str) -> str:
    earlier = "\n".join(ctx.previous_dialogue[-10:])
    target = f" to {ctx.speaking_to}" if ctx.speaking_to else ""
    kind = "an exchange between these characters" if ctx.action == "generate-character-dialogue" else f"dialogue{target}"
    return (
        f"Write {kind}.\n\n{block}\n\n"
        f"Situation: {ctx.situation or 'Not specified'}\n"
        f"Emotion: {ctx.emotion or 'Not specified'}\n"
        + (f"Earlier lines:\n{earlier}\n" if earlier else "")
        + "\nEach character must sound distinct and true to their speech patterns."
        + _language_line(ctx)
    )


def _plot(ctx: PlotContext, block: str) -> str:
    beat = f"{ctx.beat.title}: {ctx.beat.summary}" if ctx.beat else "the current story direction"
    if ctx.action == "suggest-twists":
        return (
            f"Suggest 3 {ctx.target_surprise_level} plot twists building on {beat}.\n\n{block}\n\n"
            "For each twist give the reveal, the setup it needs in earlier chapters, and its impact."
        )
    return (
        f"Expand this plot beat to {ctx.detail_level} level: {beat}\n\n{block}\n\n"
        "Describe what happens, who drives it, what changes, and how it hands off to the next beat."
    )


def _suggestion(ctx: SuggestionContext, block: str) -> str:
    kind = ctx.action.removeprefix("suggest-")
    synopsis = f"\nSynopsis: {ctx.synopsis}" if ctx.synopsis else ""
    return (
        f"Suggest {ctx.number_of_suggestions} {kind} for this novel.\n\n{block}{synopsis}\n\n"
        f"Return one per line with a one-sentence rationale after a dash."
    )


def _wiki(ctx: WikiContext, block: str) -> str:
    if ctx.action == "extract-elements":
        cats = _join(ctx.categories, empty="characters, locations, items, lore, events")
        return (
            f"Extract world elements ({cats}) from this chapter.\n\n{block}\n\n"
            f"Chapter text:\n{ctx.chapter_content}\n\n"
            "List each element with its category, a short description, and the line that establishes it."
        )
    return (
        f"Expand the wiki entry \"{ctx.entry_title}\".\n\n{block}\n\n"
        f"Current entry:\n{ctx.entry_content or '(empty)'}\n\n"
        "Keep everything consistent with the established facts and flag anything that contradicts them."
    )


def _brainstorm(ctx: BrainstormContext, block: str) -> str:
    if ctx.action == "analyze-brainstorm":
        return (
            "Analyze this brainstorm text and generate 5-7 clarifying questions that will help "
            f"develop the story.\n\nBrainstorm text:\n{ctx.brainstorm_text}"
        )
    return (
        "Based on this brainstorm, generate story foundations: premise, core conflict, "
        "protagonist and antagonist sketches, three-act outline, and themes.\n\n"
        f"{block}\n\nBrainstorm text:\n{ctx.brainstorm_text}"
    )


_MARKETING_ASKS = {
    "generate-synopsis": "Write a {length} synopsis of this novel for agents and editors, including the ending.",
    "generate-query-letter": "Write a query letter for this novel: hook, mini-synopsis, comparables, and bio placeholder.",
    "generate-book-description": "Write {length} back-cover copy for this novel. Do not reveal the ending.",
    "analyze-market": "Analyze this novel's market position: comparable titles, genre fit, audience, and selling points.",
}


def _marketing(ctx: MarketingContext, block: str) -> str:
    ask = _MARKETING_ASKS[ctx.action].format(length=ctx.target_length)
    market = f"\nTarget market: {ctx.target_market}" if ctx.target_market else ""
    synopsis = f"\nSynopsis: {ctx.synopsis}" if ctx.synopsis else ""
    return f"{ask}\n\n{block}{synopsis}{market}"


def _memory_upkeep(ctx: MemoryUpkeepContext, block: str) -> str:
    if ctx.action == "summarize-chapter":
        return (
            f"Summarize chapter {ctx.chapter_number} for story memory.\n\n{block}\n\n"
            f"Chapter text:\n{ctx.chapter_content}\n\n"
            "Return JSON with keys: summary, keyEvents, charactersPresent, locationsUsed, "
            "emotionalBeats, foreshadowing, payoffs, openQuestions, cliffhanger."
        )
    who = ctx.character_name or ctx.character_id or "the character"
    return (
        f"Update what {who} knows after chapter {ctx.chapter_number}.\n\n{block}\n\n"
        f"Chapter text:\n{ctx.chapter_content}\n\n"
        "Return JSON with keys: knownFacts, beliefs, secrets, relationships, emotionalState, "
        "activeGoals, recentExperiences. Only include what this character directly witnessed or was told."
    )


ACTION_PROMPTS: Dict[str, PromptBuilder] = {
    "generate-chapter": _chapter,
    "generate-chapter-draft": _chapter,
    "generate-scene": _scene,
    "generate-scene-prose": _scene,
    "continue-writing": _continue,
    "expand-selection": _selection,
    "condense-selection": _selection,
    "rewrite-selection": _selection,
    "generate-alternatives": _selection,
    "generate-character": _character,
    "deepen-character": _character,
    "generate-dialogue": _dialogue,
    "generate-character-dialogue": _dialogue,
    "expand-beat": _plot,
    "suggest-twists": _plot,
    "suggest-titles": _suggestion,
    "suggest-tones": _suggestion,
    "suggest-themes": _suggestion,
    "suggest-keywords": _suggestion,
    "extract-elements": _wiki,
    "expand-entry": _wiki,
    "analyze-brainstorm": _brainstorm,
    "generate-foundations": _brainstorm,
    "generate-synopsis": _marketing,
    "generate-query-letter": _marketing,
    "generate-book-description": _marketing,
    "analyze-market": _marketing,
    "summarize-chapter": _memory_upkeep,
    "update-character-knowledge": _memory_upkeep,
}

if set(ACTION_PROMPTS) != set(ACTION_CONTEXTS):
    _missing = sorted(set(ACTION_CONTEXTS) ^ set(ACTION_PROMPTS))
    raise RuntimeError(f"Prompt builders and context models disagree on actions: {_missing}")


def build_user_prompt(ctx: BaseContext, bundle: ContextBundle | None = None) -> str:
    builder = ACTION_PROMPTS[ctx.action]
    return builder(ctx, build_context_block(ctx, bundle)).strip()
