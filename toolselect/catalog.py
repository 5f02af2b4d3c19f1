"""
Catalog search capability used by the meta operations.

SqliteCatalog ranks entities lexically: each query is tokenized and scored
against an entity's name, slug, description and keywords separately, and the
best field wins. A query that appears verbatim inside the entity name scores
1.0. Results from several queries are merged keeping the best score per slug.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

import httpx

from .db import Database
from .llm import message_content
from .prompts import ASK_SYSTEM, ASK_USER, ASK_YES_NO_HINT
from .schemas import (
    AppSummary,
    AskResponse,
    CategoryRecord,
    ClassSummary,
    EntityQuery,
    EntityType,
    MethodArgument,
    MethodDetail,
    MethodRecord,
    MethodSummary,
)

logger = logging.getLogger("uvicorn.error")

_TOKEN_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "by",
        "for",
        "from",
        "get",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "the",
        "to",
        "with",
    }
)
_YES_NO_START = re.compile(r"^(is|are|does|do|can|could|would|should|will|has|have|was|were)\b")
_YES_NO_END = re.compile(r"\b(yes|no|true|false)\??$")
_WH_START = re.compile(r"^(what|who|where|when|why|how)\b")
_YES_WORDS = re.compile(r"\b(yes|true|correct|indeed|definitely|absolutely)\b")
_NO_WORDS = re.compile(r"\b(no|false|not|incorrect|doesn't|don't|cannot|can't)\b")


class CatalogBackend(Protocol):
    async def search_apps(self, query: EntityQuery) -> List[AppSummary]: ...

    async def search_classes(self, query: EntityQuery) -> List[ClassSummary]: ...

    async def search_methods(self, query: EntityQuery, detailed: bool = False) -> List[MethodSummary]: ...

    async def ask(self, entity_type: EntityType, slugs: List[str], question: str) -> AskResponse: ...

    async def resolve_methods(self, slugs: List[str]) -> List[MethodRecord]: ...

    async def list_categories(self) -> List[CategoryRecord]: ...


def tokenize(text: Optional[str]) -> Set[str]:
    tokens: Set[str] = set()
    for token in _TOKEN_RE.findall((text or "").lower()):
        if token in STOPWORDS:
            continue
        if len(token) > 3 and token.endswith("s"):
            token = token[:-1]
        tokens.add(token)
    return tokens


def similarity(query: str, name: str, fields: Iterable[Optional[str]]) -> float:
    needle = query.strip().lower()
    if needle and needle in (name or "").lower():
        return 1.0
    q_tokens = tokenize(query)
    if not q_tokens:
        return 0.0
    best = 0.0
    for field in [name, *fields]:
        f_tokens = tokenize(field)
        if not f_tokens:
            continue
        best = max(best, len(q_tokens & f_tokens) / len(q_tokens))
    return best


def _keywords(row: Dict[str, Any]) -> str:
    try:
        values = json.loads(row.get("keywords_json") or "[]")
    except json.JSONDecodeError:
        return ""
    return " ".join(str(v) for v in values) if isinstance(values, list) else ""


def rank(rows: List[Dict[str, Any]], query: EntityQuery) -> List[Dict[str, Any]]:
    best: Dict[str, Tuple[float, Dict[str, Any]]] = {}
    for text in query.search_queries:
        for row in rows:
            score = similarity(text, row["name"], (row["slug"].replace("-", " "), row.get("description"), _keywords(row)))
            if score <= query.threshold:
                continue
            current = best.get(row["slug"])
            if current is None or current[0] < score:
                best[row["slug"]] = (score, row)
    ordered = sorted(best.values(), key=lambda item: (-item[0], item[1]["name"]))
    return [row for _, row in ordered[: query.top]]


def _arguments(row: Dict[str, Any]) -> List[MethodArgument]:
    try:
        values = json.loads(row.get("arguments_json") or "[]")
    except json.JSONDecodeError:
        return []
    args: List[MethodArgument] = []
    for value in values if isinstance(values, list) else []:
        if isinstance(value, dict) and value.get("name"):
            args.append(MethodArgument(**{k: value[k] for k in ("name", "type", "description") if value.get(k) is not None}))
    return args


def is_yes_no_question(question: str) -> bool:
    text = question.lower().strip()
    if _WH_START.search(text):
        return False
    return bool(_YES_NO_START.search(text) or _YES_NO_END.search(text) or text.endswith("?"))


def extract_yes_no(answer: str) -> Tuple[bool, bool]:
    start = answer.lower()[:100]
    has_yes = bool(_YES_WORDS.search(start))
    has_no = bool(_NO_WORDS.search(start))
    if has_yes and not has_no:
        return True, False
    if has_no and not has_yes:
        return False, True
    return False, False


class SqliteCatalog:
    def __init__(self, db: Database, llm_client: Any = None, model: str = "gpt-4o-mini"):
        self.db = db
        self.llm_client = llm_client
        self.model = model

    async def list_categories(self) -> List[CategoryRecord]:
        return [CategoryRecord(**row) for row in await self.db.list_categories()]

    async def search_apps(self, query: EntityQuery) -> List[AppSummary]:
        if not query.search_queries or query.top <= 0:
            return []
        rows = await self.db.fetch_apps(query.categories)
        return [AppSummary(slug=r["slug"], name=r["name"], description=r.get("description")) for r in rank(rows, query)]

    async def search_classes(self, query: EntityQuery) -> List[ClassSummary]:
        if not query.search_queries or query.top <= 0:
            return []
        rows = await self.db.fetch_classes(query.apps)
        return [
            ClassSummary(slug=r["slug"], name=r["name"], description=r.get("description"), app_slug=r["app_slug"])
            for r in rank(rows, query)
        ]

    async def search_methods(self, query: EntityQuery, detailed: bool = False) -> List[MethodSummary]:
        if not query.search_queries or query.top <= 0:
            return []
        rows = await self.db.fetch_methods(query.apps, query.classes, query.methods)
        results: List[MethodSummary] = []
        for r in rank(rows, query):
            base = {
                "slug": r["slug"],
                "name": r["name"],
                "description": r.get("description"),
                "class_slug": r["class_slug"],
                "app_slug": r["app_slug"],
            }
            if detailed:
                results.append(
                    MethodDetail(
                        **base,
                        path=r["path"],
                        http_verb=r["http_verb"],
                        arguments=_arguments(r),
                        return_type=r.get("return_type"),
                        return_description=r.get("return_description"),
                    )
                )
            else:
                results.append(MethodSummary(**base))
        return results

    async def resolve_methods(self, slugs: List[str]) -> List[MethodRecord]:
        if not slugs:
            return []
        rows = await self.db.fetch_methods(method_slugs=slugs)
        return [
            MethodRecord(
                id=r["id"],
                class_id=r["class_id"],
                slug=r["slug"],
                name=r["name"],
                path=r["path"],
                http_verb=r["http_verb"],
                description=r.get("description"),
                arguments=_arguments(r),
                return_type=r.get("return_type"),
                return_description=r.get("return_description"),
                created_at=r.get("created_at"),
                updated_at=r.get("updated_at"),
            )
            for r in rows
        ]

    async def _entity_context(self, entity_type: EntityType, slugs: List[str]) -> List[Dict[str, Any]]:
        if entity_type == "apps":
            rows = [r for r in await self.db.fetch_apps() if r["slug"] in slugs]
            return [{"slug": r["slug"], "name": r["name"], "description": r.get("description")} for r in rows]
        if entity_type == "classes":
            rows = [r for r in await self.db.fetch_classes() if r["slug"] in slugs]
            return [
                {"slug": r["slug"], "name": r["name"], "description": r.get("description"), "app": r["app_slug"]}
                for r in rows
            ]
        rows = await self.db.fetch_methods(method_slugs=slugs)
        return [
            {
                "slug": r["slug"],
                "name": r["name"],
                "description": r.get("description"),
                "http_verb": r["http_verb"],
                "path": r["path"],
                "arguments": [arg.model_dump() for arg in _arguments(r)],
                "return_type": r.get("return_type"),
                "return_description": r.get("return_description"),
                "class": {"slug": r["class_slug"], "name": r["class_name"], "description": r.get("class_description")},
                "app": {"slug": r["app_slug"], "name": r["app_name"], "description": r.get("app_description")},
            }
            for r in rows
        ]

    async def ask(self, entity_type: EntityType, slugs: List[str], question: str) -> AskResponse:
        entities = await self._entity_context(entity_type, slugs)
        if not entities:
            logger.info("[catalog] ask: no %s found for %s", entity_type, ", ".join(slugs))
            return AskResponse(
                answer=f"No {entity_type} found with slugs: {', '.join(slugs)}.",
                metadata={"error": f"{entity_type.capitalize()} not found"},
            )
        if self.llm_client is None:
            return AskResponse(
                answer=f"Cannot answer questions about {entity_type}: no model is configured.",
                metadata={"error": "No model configured"},
            )
        yes_no = is_yes_no_question(question)
        context = json.dumps({entity_type: entities, "total": len(entities)}, indent=2, ensure_ascii=False)
        messages = [
            {
                "role": "system",
                "content": ASK_SYSTEM.format(
                    entity_type=entity_type,
                    yes_no_hint=ASK_YES_NO_HINT if yes_no else "",
                ).strip(),
            },
            {
                "role": "user",
                "content": ASK_USER.format(
                    entity_label=entity_type.upper(),
                    context=context,
                    question=question,
                    entity_type=entity_type,
                ).strip(),
            },
        ]
        try:
            response = await self.llm_client.chat_completion(model=self.model, messages=messages)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[catalog] ask about %s failed: %s", entity_type, exc)
            return AskResponse(
                answer=f"I encountered an error while processing your question about {entity_type}: {', '.join(slugs)}.",
                metadata={"error": str(exc) or type(exc).__name__},
            )
        content = message_content(response)
        if not content:
            return AskResponse(
                answer=f"I couldn't generate an answer to your question about these {entity_type}.",
                metadata={"error": "No content in model response"},
            )
        yes, no = extract_yes_no(content) if yes_no else (False, False)
        return AskResponse(
            yes=yes,
            no=no,
            answer=content,
            metadata={
                "entity_type": entity_type,
                "entities": len(entities),
                "is_yes_no_question": yes_no,
            },
        )