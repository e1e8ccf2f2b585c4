"""Parse natural-language goals into intent, entities and required capabilities.

Classification is table driven: goal templates, intent verbs and capability
keyword sets are plain data records tried in order, and templates can be
loaded from JSON so they can be tuned without touching the matching logic.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from goal_orchestrator.planning.models import (
    AgentType,
    Capability,
    GoalComplexity,
    GoalEntity,
    GoalMetadata,
    ParsedGoal,
)

logger = logging.getLogger(__name__)

TEMPLATE_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.6
DEFAULT_INTENT = "build"


@dataclass(slots=True)
class GoalTemplate:
    """Known goal shape with a fixed capability and agent set."""

    id: str
    name: str
    pattern: str
    description: str
    required_capabilities: tuple[Capability, ...]
    suggested_agents: tuple[AgentType, ...]
    estimated_duration: int
    complexity: GoalComplexity
    examples: tuple[str, ...] = ()
    _compiled: re.Pattern[str] | None = field(default=None, repr=False, compare=False)

    def match(self, normalized_goal: str) -> re.Match[str] | None:
        if self._compiled is None:
            self._compiled = re.compile(self.pattern, re.IGNORECASE)
        return self._compiled.search(normalized_goal)


@dataclass(slots=True, frozen=True)
class CapabilityRule:
    pattern: str
    capabilities: tuple[Capability, ...]


DEFAULT_GOAL_TEMPLATES: tuple[GoalTemplate, ...] = (
    GoalTemplate(
        id="api-for-resource",
        name="Build API for Resource",
        pattern=(
            r"(?:build|create|implement)\s+(?:a\s+)?(?:rest(?:ful)?\s+)?api\s+for\s+"
            r"(?P<resource>\w+)"
        ),
        description="Create a RESTful API for a resource with CRUD operations",
        required_capabilities=(
            Capability.API,
            Capability.CRUD,
            Capability.VALIDATION,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.MODELS, AgentType.API, AgentType.DATABASE, AgentType.TEST),
        estimated_duration=180,
        complexity=GoalComplexity.MODERATE,
        examples=("Build a RESTful API for user management", "Create API for products"),
    ),
    GoalTemplate(
        id="add-authentication",
        name="Add Authentication",
        pattern=r"(?:add|implement|create)\s+(?:user\s+)?authentication",
        description="Implement token-based authentication",
        required_capabilities=(
            Capability.AUTHENTICATION,
            Capability.SECURITY,
            Capability.API,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(
            AgentType.AUTH,
            AgentType.SECURITY,
            AgentType.API,
            AgentType.DATABASE,
            AgentType.TEST,
        ),
        estimated_duration=240,
        complexity=GoalComplexity.COMPLEX,
        examples=("Add authentication", "Implement user authentication"),
    ),
    GoalTemplate(
        id="add-rbac",
        name="Add Role-Based Access Control",
        pattern=r"(?:add|implement|create)\s+(?:rbac|role.based|permission|authorization)",
        description="Implement role-based access control",
        required_capabilities=(
            Capability.AUTHORIZATION,
            Capability.SECURITY,
            Capability.DATABASE,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.RBAC, AgentType.SECURITY, AgentType.DATABASE, AgentType.TEST),
        estimated_duration=180,
        complexity=GoalComplexity.COMPLEX,
        examples=("Add RBAC", "Implement role-based access control"),
    ),
    GoalTemplate(
        id="integrate-with-system",
        name="Integrate with External System",
        pattern=r"integrate\s+with\s+(?P<system>\w+)",
        description="Create integration with an external system",
        required_capabilities=(
            Capability.INTEGRATION,
            Capability.API,
            Capability.VALIDATION,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.INTEGRATION, AgentType.API, AgentType.TEST),
        estimated_duration=240,
        complexity=GoalComplexity.COMPLEX,
        examples=("Integrate with Slack", "Integrate with GitHub"),
    ),
    GoalTemplate(
        id="add-realtime",
        name="Add Real-time Feature",
        pattern=r"(?:add|implement|create)\s+(?:realtime|real.time|websocket|live)",
        description="Implement a real-time feature over WebSocket",
        required_capabilities=(
            Capability.REAL_TIME,
            Capability.WEBSOCKET,
            Capability.API,
            Capability.TESTING,
        ),
        suggested_agents=(AgentType.REALTIME, AgentType.API, AgentType.TEST),
        estimated_duration=180,
        complexity=GoalComplexity.MODERATE,
        examples=("Add real-time notifications", "Implement live updates"),
    ),
    GoalTemplate(
        id="build-ui",
        name="Build User Interface",
        pattern=(
            r"(?:build|create|implement)\s+(?:ui|interface|dashboard|form|page)\s+for\s+"
            r"(?P<feature>\w+)"
        ),
        description="Create a user interface component",
        required_capabilities=(Capability.UI, Capability.API, Capability.TESTING),
        suggested_agents=(AgentType.UI, AgentType.API, AgentType.TEST),
        estimated_duration=240,
        complexity=GoalComplexity.MODERATE,
        examples=("Build UI for user management", "Create dashboard for analytics"),
    ),
)

INTENT_PATTERNS: tuple[tuple[str, str], ...] = (
    ("build", r"^(?:build|create|develop|implement)\b"),
    ("add", r"^(?:add|include|integrate|attach)\b"),
    ("improve", r"^(?:improve|enhance|optimize|upgrade)\b"),
    ("fix", r"^(?:fix|repair|resolve|debug)\b"),
    ("refactor", r"^(?:refactor|restructure|reorganize)\b"),
    ("test", r"^(?:test|verify|validate)\b"),
    ("document", r"^(?:document|describe|explain)\b"),
    ("deploy", r"^(?:deploy|release|publish)\b"),
)

CAPABILITY_RULES: tuple[CapabilityRule, ...] = (
    CapabilityRule(
        r"\b(?:api|apis|endpoints?|rest|restful|graphql)\b",
        (Capability.API, Capability.CRUD, Capability.VALIDATION),
    ),
    CapabilityRule(
        r"\b(?:auth\w*|login|signin|signup|register|jwt|tokens?)\b",
        (Capability.AUTHENTICATION, Capability.SECURITY),
    ),
    CapabilityRule(
        r"\b(?:authorization|rbac|permissions?|roles?|role-based|access control)\b",
        (Capability.AUTHORIZATION, Capability.SECURITY),
    ),
    CapabilityRule(
        r"\b(?:realtime|real-time|websockets?|sockets?|live|push)\b",
        (Capability.REAL_TIME, Capability.WEBSOCKET),
    ),
    CapabilityRule(r"\b(?:database|db|postgres|migrations?|schema)\b", (Capability.DATABASE,)),
    CapabilityRule(r"\b(?:ui|interface|dashboard|frontend|pages?|forms?)\b", (Capability.UI,)),
    CapabilityRule(r"\b(?:tests?|testing|spec|unittest|integration test)\b", (Capability.TESTING,)),
    CapabilityRule(r"\b(?:integrate|integration|connect|sync)\b", (Capability.INTEGRATION,)),
    CapabilityRule(r"\b(?:document\w*|docs?|readme|guide)\b", (Capability.DOCUMENTATION,)),
)

DEFAULT_CAPABILITIES: tuple[Capability, ...] = (Capability.API, Capability.CRUD)

CAPABILITY_AGENTS: dict[Capability, tuple[AgentType, ...]] = {
    Capability.CRUD: (AgentType.API, AgentType.MODELS),
    Capability.AUTHENTICATION: (AgentType.AUTH, AgentType.SECURITY),
    Capability.AUTHORIZATION: (AgentType.RBAC, AgentType.SECURITY),
    Capability.VALIDATION: (AgentType.QUALITY,),
    Capability.REAL_TIME: (AgentType.REALTIME,),
    Capability.TESTING: (AgentType.TEST,),
    Capability.INTEGRATION: (AgentType.INTEGRATION,),
    Capability.SECURITY: (AgentType.SECURITY,),
    Capability.DATABASE: (AgentType.DATABASE, AgentType.MODELS),
    Capability.UI: (AgentType.UI,),
    Capability.DOCUMENTATION: (AgentType.DOCUMENTATION,),
    Capability.API: (AgentType.API,),
    Capability.WEBSOCKET: (AgentType.REALTIME,),
    Capability.CACHING: (AgentType.API,),
    Capability.LOGGING: (AgentType.QUALITY,),
}

COMPLEXITY_BONUSES: dict[Capability, int] = {
    Capability.AUTHENTICATION: 20,
    Capability.AUTHORIZATION: 20,
    Capability.REAL_TIME: 15,
    Capability.INTEGRATION: 15,
    Capability.SECURITY: 10,
}

# group name -> (entity type, confidence, description template)
_TEMPLATE_ENTITY_GROUPS: dict[str, tuple[str, float, str]] = {
    "resource": ("resource", 0.95, "{} resource"),
    "feature": ("feature", 0.9, "{} feature"),
    "system": ("integration", 0.9, "Integration with {}"),
}

_API_RESOURCE_RE = re.compile(r"\bapi\s+for\s+(\w+)")
_AUTH_RE = re.compile(r"\b(?:authentication|auth|login|signin)\b")
_INTEGRATION_RE = re.compile(r"\bintegrate\s+with\s+(\w+)")
_UI_RE = re.compile(r"\b(?:ui|interface|dashboard|form|page)\b")
_NON_WORD_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


class GoalParser:
    """Turn free-form goals into `ParsedGoal` records. Never raises on input text."""

    def __init__(self, templates: tuple[GoalTemplate, ...] | list[GoalTemplate] | None = None):
        self._templates: list[GoalTemplate] = list(
            DEFAULT_GOAL_TEMPLATES if templates is None else templates
        )

    def get_templates(self) -> list[GoalTemplate]:
        return list(self._templates)

    def add_template(self, template: GoalTemplate) -> None:
        self._templates.append(template)

    def parse_goal(self, goal: str) -> ParsedGoal:
        normalized = normalize_goal(goal)
        for template in self._templates:
            match = template.match(normalized)
            if match is not None:
                logger.debug("Goal matched template %s: %r", template.id, normalized)
                return self._parse_with_template(goal, normalized, template, match)
        return self._parse_without_template(goal, normalized)

    def _parse_with_template(
        self,
        goal: str,
        normalized: str,
        template: GoalTemplate,
        match: re.Match[str],
    ) -> ParsedGoal:
        entities: list[GoalEntity] = []
        for group_name, value in match.groupdict().items():
            if not value:
                continue
            entity_type, confidence, description = _TEMPLATE_ENTITY_GROUPS.get(
                group_name,
                (group_name, TEMPLATE_CONFIDENCE, "{}"),
            )
            entities.append(
                GoalEntity(
                    type=entity_type,
                    name=value,
                    description=description.format(value),
                    confidence=confidence,
                ),
            )
        entities = _merge_entities(entities, extract_generic_entities(normalized))
        capabilities = list(template.required_capabilities)
        return ParsedGoal(
            original_goal=goal,
            normalized_goal=normalized,
            intent=extract_intent(normalized),
            entities=entities,
            capabilities=capabilities,
            suggested_agents=list(template.suggested_agents),
            estimated_complexity=template.complexity,
            confidence=TEMPLATE_CONFIDENCE,
            metadata=build_goal_metadata(capabilities),
            template_id=template.id,
        )

    def _parse_without_template(self, goal: str, normalized: str) -> ParsedGoal:
        capabilities = infer_capabilities(normalized)
        return ParsedGoal(
            original_goal=goal,
            normalized_goal=normalized,
            intent=extract_intent(normalized),
            entities=extract_generic_entities(normalized),
            capabilities=capabilities,
            suggested_agents=suggest_agents(capabilities),
            estimated_complexity=estimate_complexity(normalized, capabilities),
            confidence=FALLBACK_CONFIDENCE,
            metadata=build_goal_metadata(capabilities),
        )


def normalize_goal(goal: str) -> str:
    lowered = goal.lower().strip()
    return _WHITESPACE_RE.sub(" ", _NON_WORD_RE.sub("", lowered)).strip()


def extract_intent(normalized_goal: str) -> str:
    for intent, pattern in INTENT_PATTERNS:
        if re.search(pattern, normalized_goal):
            return intent
    return DEFAULT_INTENT


def extract_generic_entities(normalized_goal: str) -> list[GoalEntity]:
    entities: list[GoalEntity] = []
    api_match = _API_RESOURCE_RE.search(normalized_goal)
    if api_match:
        resource = api_match.group(1)
        entities.append(GoalEntity("resource", resource, f"{resource} API resource", 0.85))
    if _AUTH_RE.search(normalized_goal):
        entities.append(GoalEntity("security", "authentication", "Authentication system", 0.9))
    integration_match = _INTEGRATION_RE.search(normalized_goal)
    if integration_match:
        system = integration_match.group(1)
        entities.append(GoalEntity("integration", system, f"Integration with {system}", 0.85))
    if _UI_RE.search(normalized_goal):
        entities.append(
            GoalEntity("feature", "user-interface", "User interface component", 0.8),
        )
    return entities


def infer_capabilities(normalized_goal: str) -> list[Capability]:
    """Collect capabilities from keyword rules, defaulting to API + CRUD."""

    capabilities: list[Capability] = []
    for rule in CAPABILITY_RULES:
        if re.search(rule.pattern, normalized_goal):
            for capability in rule.capabilities:
                if capability not in capabilities:
                    capabilities.append(capability)
    if not capabilities:
        capabilities.extend(DEFAULT_CAPABILITIES)
    return capabilities


def suggest_agents(capabilities: list[Capability]) -> list[AgentType]:
    agents: list[AgentType] = []
    for capability in capabilities:
        for agent in CAPABILITY_AGENTS.get(capability, ()):
            if agent not in agents:
                agents.append(agent)
    if len(agents) > 1 and AgentType.TEST not in agents:
        agents.append(AgentType.TEST)
    return agents


def estimate_complexity(normalized_goal: str, capabilities: list[Capability]) -> GoalComplexity:
    score = len(capabilities) * 10
    score += sum(
        bonus for capability, bonus in COMPLEXITY_BONUSES.items() if capability in capabilities
    )
    score += len(normalized_goal.split()) * 2
    if score < 30:  # noqa: PLR2004
        return GoalComplexity.SIMPLE
    if score < 60:  # noqa: PLR2004
        return GoalComplexity.MODERATE
    if score < 100:  # noqa: PLR2004
        return GoalComplexity.COMPLEX
    return GoalComplexity.VERY_COMPLEX


def build_goal_metadata(capabilities: list[Capability]) -> GoalMetadata:
    present = set(capabilities)
    return GoalMetadata(
        requires_auth=Capability.AUTHENTICATION in present,
        requires_database=bool(present & {Capability.DATABASE, Capability.CRUD}),
        requires_ui=Capability.UI in present,
        requires_testing=Capability.TESTING in present,
        requires_documentation=Capability.DOCUMENTATION in present,
        is_integration=Capability.INTEGRATION in present,
        affects_existing_code=len(present) > 2,  # noqa: PLR2004
    )


def load_goal_templates(path: Path) -> tuple[GoalTemplate, ...]:
    """Load goal templates from a JSON array of template objects."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise TypeError(f"Expected JSON array of goal templates in {path}")
    templates: list[GoalTemplate] = []
    for raw in payload:
        if not isinstance(raw, dict):
            raise TypeError(f"Goal template entry must be an object in {path}")
        try:
            template = GoalTemplate(
                id=str(raw["id"]),
                name=str(raw.get("name", raw["id"])),
                pattern=str(raw["pattern"]),
                description=str(raw.get("description", "")),
                required_capabilities=tuple(
                    Capability(value) for value in raw["required_capabilities"]
                ),
                suggested_agents=tuple(AgentType(value) for value in raw["suggested_agents"]),
                estimated_duration=int(raw.get("estimated_duration", 120)),
                complexity=GoalComplexity(raw.get("complexity", GoalComplexity.MODERATE.value)),
                examples=tuple(str(value) for value in raw.get("examples", ())),
            )
            re.compile(template.pattern)
        except (KeyError, ValueError, re.error) as error:
            raise ValueError(f"Invalid goal template in {path}: {raw!r}") from error
        templates.append(template)
    logger.info("Loaded %d goal templates from %s", len(templates), path)
    return tuple(templates)


def _merge_entities(primary: list[GoalEntity], extra: list[GoalEntity]) -> list[GoalEntity]:
    seen = {(entity.type, entity.name) for entity in primary}
    merged = list(primary)
    for entity in extra:
        key = (entity.type, entity.name)
        if key not in seen:
            seen.add(key)
            merged.append(entity)
    return merged
