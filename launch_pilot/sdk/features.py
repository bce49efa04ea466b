"""
AI feature call sites.

Each call site builds a prompt, calls the metered client, normalizes the
completion and validates it against its schema. Failures are contained
here and returned as degraded results rather than raised to the caller,
except where noted.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config.loader import LimitsConfig
from ..core.guardrails import (
    GuardrailViolation,
    check_daily_limit,
    check_feature_access,
    check_input_length,
    check_min_credits,
)
from ..core.normalizer import as_list, normalize
from ..core.schemas import (
    DeepAnalysis,
    IdeaResult,
    ProjectAnalysis,
    SchemaMismatch,
    validate_many,
    validate_payload,
)
from ..storage.repository import CacheRepository, DailyCounterRepository
from .ai_client import AICompletionError, MeteredAIClient

logger = logging.getLogger(__name__)

IDEA_SYSTEM_PROMPT = (
    "You must respond with ONLY valid JSON array format. Do not include any text "
    "before or after the JSON. Start with [ and end with ]."
)
ANALYST_SYSTEM_PROMPT = "You are a helpful startup business analyst."
DEEP_ANALYSIS_MODEL = "deepseek/deepseek-r1:free"

NOT_SPECIFIED = "Not specified"


class IdeaSource(Enum):
    """Where an idea batch came from."""
    AI = "ai"
    CACHE = "cache"
    PARSE_ERROR = "parse_error"
    INPUT_TOO_LONG = "input_too_long"
    MOCK = "mock"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class IdeaProfile:
    """Founder profile used to personalize generated ideas."""
    budget: str = ""
    time_availability: str = ""
    team_size: str = ""
    skills: str = ""
    interests: str = ""
    location: str = ""
    additional_info: str = ""
    extended: Dict[str, str] = field(default_factory=dict)

    def fields(self) -> List[str]:
        basic = [self.budget, self.time_availability, self.team_size, self.skills,
                 self.interests, self.location, self.additional_info]
        return basic + list(self.extended.values())

    def cache_key(self) -> str:
        return "ideas-" + json.dumps(asdict(self), sort_keys=True)


@dataclass(frozen=True)
class IdeaBatch:
    ideas: List[IdeaResult]
    source: IdeaSource
    error: Optional[str] = None


@dataclass(frozen=True)
class ProjectBrief:
    """Saved project summary passed to analysis prompts."""
    id: str
    name: str
    description: str
    investment: str = ""
    timeframe: str = ""
    difficulty: str = ""


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: Optional[ProjectAnalysis]
    partial: bool = False
    error: Optional[str] = None


def input_too_long_idea() -> IdeaResult:
    return IdeaResult(
        title="Input Too Long",
        description=(
            "Your input is very long which can cause parsing issues and waste tokens. "
            "Please try shorter, more focused descriptions in each field."
        ),
        category="Error",
        rating=5,
        investment="N/A",
        timeframe="N/A",
        risks=["Reduce text length in form fields"],
        opportunities=["Use bullet points", "Focus on key details only"],
    )


def parse_error_idea() -> IdeaResult:
    return IdeaResult(
        title="AI Response Processing Error",
        description=(
            "The AI generated a response but we had trouble parsing it as JSON. This might "
            "happen with very long or complex prompts. Try simplifying your input or "
            "breaking it into smaller parts."
        ),
        category="Error",
        rating=5,
        investment="N/A",
        timeframe="N/A",
        risks=["Try with a shorter, more focused prompt"],
        opportunities=["Use more specific keywords", "Break complex ideas into smaller requests"],
    )


def mock_ideas() -> List[IdeaResult]:
    """Deterministic ideas shown when the AI service is unavailable."""
    return [
        IdeaResult(
            title="Remote Team Collaboration App",
            description="A platform for distributed teams to manage projects, chat, and share files securely.",
            investment="$2,000",
            timeframe="2 months",
            rating=7,
        ),
        IdeaResult(
            title="Healthy Meal Prep Service",
            description="Subscription-based healthy meal kits delivered weekly, tailored to dietary needs.",
            investment="$5,000",
            timeframe="3 months",
            rating=9,
        ),
        IdeaResult(
            title="Eco-Friendly Packaging Startup",
            description="Manufacture and sell biodegradable packaging to small businesses and e-commerce stores.",
            investment="$8,000",
            timeframe="4 months",
            rating=6,
        ),
    ]


def build_idea_prompt(profile: IdeaProfile) -> str:
    extended = ""
    if any(value.strip() for value in profile.extended.values()):
        lines = "\n".join(
            f"- {name}: {value or NOT_SPECIFIED}" for name, value in profile.extended.items()
        )
        extended = (
            "\n\nEXTENDED PROFILE (use this for highly personalized recommendations):\n"
            f"{lines}\n"
            "Generate ideas that precisely match this profile."
        )
    return f"""You are an expert business startup consultant AI. Generate exactly 3 highly personalized, realistic and viable business ideas based on the user's profile below.

AVOID: generic ideas like dropshipping, print-on-demand, crypto, affiliate marketing, or any oversaturated markets.

Return a valid JSON array with 3 objects, each including:
- "title" (string): compelling business name
- "description" (string): 2-3 sentences explaining what it does, what problem it solves, and why it fits this user
- "investment" (string): realistic total startup cost within their budget
- "timeframe" (string): time needed to launch and generate first revenue
- "rating" (number): business viability rating from 1-10

BASIC PROFILE:
- Budget: {profile.budget or NOT_SPECIFIED}
- Time Availability: {profile.time_availability or NOT_SPECIFIED}
- Team Size: {profile.team_size or NOT_SPECIFIED}
- Skills: {profile.skills or NOT_SPECIFIED}
- Interests: {profile.interests or NOT_SPECIFIED}
- Location: {profile.location or NOT_SPECIFIED}
- Additional Info: {profile.additional_info or NOT_SPECIFIED}{extended}

Return ONLY the JSON array. No explanations or additional text."""


def generate_ideas(
    client: MeteredAIClient,
    counters: DailyCounterRepository,
    cache: CacheRepository,
    user_key: Optional[str],
    profile: IdeaProfile,
    limits: Optional[LimitsConfig] = None,
    max_retries: int = 1,
    sleep: Callable[[float], None] = time.sleep
) -> IdeaBatch:
    """Generate business ideas for a founder profile.

    Never raises for AI or parsing failures: tier gates yield a BLOCKED
    batch, oversized input an "Input Too Long" record, an unparseable
    completion a single error record, and a failing AI service the mock
    ideas with an error message.
    """
    limits = limits or client.limits
    entry = client.ledger.read(user_key)

    try:
        check_daily_limit(entry.tier, counters.get(user_key), limits.free_daily_ideas)
        check_min_credits(entry, limits.free_min_credits)
    except GuardrailViolation as e:
        return IdeaBatch(ideas=[], source=IdeaSource.BLOCKED, error=str(e))

    try:
        check_input_length(profile.fields(), limits.max_input_chars)
    except GuardrailViolation:
        return IdeaBatch(ideas=[input_too_long_idea()], source=IdeaSource.INPUT_TOO_LONG)

    cache_key = profile.cache_key()
    cached = cache.get(cache_key)
    if cached is not None:
        try:
            return IdeaBatch(ideas=validate_many(cached, IdeaResult), source=IdeaSource.CACHE)
        except SchemaMismatch:
            logger.warning("Discarding cached ideas that no longer validate")
            cache.invalidate(cache_key)

    counters.increment(user_key)
    messages = [
        {"role": "system", "content": IDEA_SYSTEM_PROMPT},
        {"role": "user", "content": build_idea_prompt(profile)},
    ]

    attempt = 0
    while True:
        try:
            raw = client.complete(messages, user_key=user_key, max_tokens=1000, feature="idea_generator")
            break
        except GuardrailViolation as e:
            return IdeaBatch(ideas=[], source=IdeaSource.BLOCKED, error=str(e))
        except AICompletionError as e:
            if attempt < max_retries:
                attempt += 1
                logger.warning("Idea generation failed, retrying (%d/%d): %s", attempt, max_retries, e)
                sleep(1.0 * attempt)
                continue
            logger.error("Idea generation failed, using mock ideas: %s", e)
            return IdeaBatch(ideas=mock_ideas(), source=IdeaSource.MOCK, error=str(e))

    result = normalize(raw)
    if not result.ok:
        logger.error("Failed to parse AI response as JSON: %r", raw[:200])
        return IdeaBatch(ideas=[parse_error_idea()], source=IdeaSource.PARSE_ERROR)

    try:
        ideas = validate_many(as_list(result.value), IdeaResult)
    except SchemaMismatch as e:
        logger.error("AI ideas rejected: %s", e)
        return IdeaBatch(ideas=[parse_error_idea()], source=IdeaSource.PARSE_ERROR, error=str(e))

    cache.put(cache_key, [idea.model_dump() for idea in ideas])
    return IdeaBatch(ideas=ideas, source=IdeaSource.AI)


def build_analysis_prompt(project: ProjectBrief) -> str:
    return f"""You are an AI startup analyst. Output a comprehensive project evaluation in valid raw JSON only. Do NOT include explanations, markdown, or extra commentary.

Project: {project.name}
Description: {project.description}
Investment: {project.investment}
Timeframe: {project.timeframe}

Your response MUST follow this format:
{{
  "riskAssessment": {{
    "marketCompetition": "High Risk - Crowded niche",
    "technicalComplexity": "Medium Risk - Complex backend",
    "regulatoryCompliance": "Low Risk - Minimal regulations"
  }},
  "legality": {{"summary": "...", "requirements": ["..."]}},
  "budget": {{"startupCosts": "...", "monthlyCosts": "..."}},
  "finances": {{"revenueModel": "...", "breakEven": "..."}}
}}"""


def analyze_project(
    client: MeteredAIClient,
    user_key: Optional[str],
    project: ProjectBrief,
    limits: Optional[LimitsConfig] = None
) -> AnalysisOutcome:
    """Run the comprehensive project analysis.

    Debits a flat surcharge on top of the completion's token usage. A
    truncated response is accepted as a partial result with a warning.
    """
    limits = limits or client.limits
    messages = [
        {"role": "system", "content": ANALYST_SYSTEM_PROMPT},
        {"role": "user", "content": build_analysis_prompt(project)},
    ]
    try:
        raw = client.complete(messages, user_key=user_key, max_tokens=2000, feature="project_analysis")
    except (AICompletionError, GuardrailViolation) as e:
        return AnalysisOutcome(analysis=None, error=str(e) or "AI generation failed. Please retry.")

    if limits.deep_analysis_surcharge:
        client.ledger.debit(user_key, limits.deep_analysis_surcharge, feature="deep_analysis_surcharge")

    result = normalize(raw)
    if not result.ok:
        return AnalysisOutcome(
            analysis=None,
            error="AI response was not valid JSON. You can retry for a better result."
        )
    try:
        analysis = ProjectAnalysis.from_payload(result.value)
    except SchemaMismatch as e:
        return AnalysisOutcome(analysis=None, error=str(e))

    if result.partial:
        return AnalysisOutcome(
            analysis=analysis,
            partial=True,
            error="Warning: AI response was incomplete or truncated. Showing partial result."
        )
    return AnalysisOutcome(analysis=analysis)


def build_deep_analysis_prompt(project: ProjectBrief) -> str:
    return f"""You are an AI business analyst. Your ONLY task is to output a valid JSON object with no markdown, commentary or code fences.
If you cannot fill a value, use an empty string ("") or empty array ([]).

Title: {project.name}
Description: {project.description}
Investment: {project.investment}
Timeframe: {project.timeframe}
Difficulty: {project.difficulty}

Required keys: "opportunity" (string), "pros" (list), "cons" (list), "budget" (object with "breakdown" and "total"), "billOfMaterials" (list), "timeline" (list), "market" (object), "forecast" (object), "marketing" (object), "legal" (object), "recommendations" (list).

REMINDER: Output ONLY the raw JSON object."""


def deep_analysis(
    client: MeteredAIClient,
    cache: CacheRepository,
    user_key: Optional[str],
    project: ProjectBrief
) -> DeepAnalysis:
    """Return the cached deep analysis of a project, generating it on a miss.

    Raises:
        FeatureLocked: If the user's tier does not unlock deep analysis
        AICompletionError: If the completion service fails
        UnrecoverableResponse: If the completion holds no JSON object
        SchemaMismatch: If the JSON does not match DeepAnalysis
    """
    cache_key = f"deep_analysis_{project.id}"
    cached = cache.get(cache_key)
    if cached is not None:
        try:
            return validate_payload(cached, DeepAnalysis)
        except SchemaMismatch:
            cache.invalidate(cache_key)

    check_feature_access(client.ledger.read(user_key).tier, "deep_analysis")
    raw = client.complete(
        [
            {"role": "system", "content": "You are a business analyst assistant."},
            {"role": "user", "content": build_deep_analysis_prompt(project)},
        ],
        user_key=user_key,
        max_tokens=5000,
        model=DEEP_ANALYSIS_MODEL,
        feature="deep_analysis",
    )
    analysis = validate_payload(normalize(raw, allow_partial=False).unwrap(), DeepAnalysis)
    cache.put(cache_key, analysis.model_dump(mode="json"))
    return analysis
