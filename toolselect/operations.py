import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .errors import CallBudgetExceeded, LineExecutionError, SandboxViolation
from .schemas import EntityQuery

logger = logging.getLogger("uvicorn.error")

FINISH = "finish"
SEARCH_OPERATIONS = (
    "get_apps",
    "get_classes",
    "get_methods",
    "get_method_details",
    "ask_to_apps",
    "ask_to_classes",
    "ask_to_methods",
)
OPERATION_NAMES = SEARCH_OPERATIONS + (FINISH,)

Operation = Callable[..., Awaitable[Any]]


class CallBudget:
    """Counts search/ask calls for one whole run."""

    def __init__(self, limit: int = 30):
        self.limit = max(0, int(limit))
        self.count = 0

    def charge(self, tool: str) -> None:
        self.count += 1
        if self.count > self.limit:
            raise CallBudgetExceeded(
                f"Operation call limit exceeded ({self.limit} calls). This usually means your code has an "
                "infinite loop. Add a break condition or call finish().",
                {"limit": self.limit, "count": self.count, "tool": tool},
            )


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ()) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def entity_query(args: Sequence[Any], kwargs: Dict[str, Any], default_threshold: float) -> EntityQuery:
    """Accepts get_x({...}), get_x(search_queries=[...]) or get_x(["q1", "q2"])."""
    if len(args) > 1:
        raise TypeError("expected a single query object")
    if args and isinstance(args[0], dict):
        payload = {**args[0], **kwargs}
    elif args:
        payload = {"search_queries": args[0], **kwargs}
    else:
        payload = dict(kwargs)
    payload.setdefault("threshold", default_threshold)
    try:
        return EntityQuery(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid query: {_describe_validation_error(exc)}") from exc


def _slug_list(value: Any, name: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{name} must be a list of slugs")
    return [str(v) for v in value]


def _filter_note(query: EntityQuery) -> str:
    filters = []
    if query.categories:
        filters.append(f"cat:{len(query.categories)}")
    if query.apps:
        filters.append(f"app:{len(query.apps)}")
    if query.classes:
        filters.append(f"cls:{len(query.classes)}")
    return f" [{','.join(filters)}]" if filters else ""


def build_meta_operations(catalog: Any, default_threshold: float = 0.3) -> Dict[str, Operation]:
    """Bind the catalog's search/ask capability to the names model code calls."""

    def _search(tool: str, label: str, search: Callable[..., Awaitable[List[Any]]], **search_kwargs: Any) -> Operation:
        async def _op(*args: Any, **kwargs: Any) -> List[Dict[str, Any]]:
            query = entity_query(args, kwargs, default_threshold)
            if not query.search_queries or query.top <= 0:
                return []
            results = await search(query, **search_kwargs)
            logger.info(
                "[meta-tools:%s] %sq/t%s→%s%s",
                label,
                len(query.search_queries),
                query.threshold,
                len(results),
                _filter_note(query),
            )
            return [item.model_dump() for item in results]

        _op.__name__ = tool
        return _op

    def _ask(tool: str, entity_type: str) -> Operation:
        async def _op(slugs: Any, question: str) -> Dict[str, Any]:
            slug_list = _slug_list(slugs, "slugs")
            logger.info("[meta-tools:%s] %s %s: %s", tool.replace("_", "-"), len(slug_list), entity_type, question[:100])
            response = await catalog.ask(entity_type, slug_list, str(question))
            return response.model_dump()

        _op.__name__ = tool
        return _op

    return {
        "get_apps": _search("get_apps", "get-apps", catalog.search_apps),
        "get_classes": _search("get_classes", "get-classes", catalog.search_classes),
        "get_methods": _search("get_methods", "get-methods", catalog.search_methods),
        "get_method_details": _search(
            "get_method_details", "get-method-details", catalog.search_methods, detailed=True
        ),
        "ask_to_apps": _ask("ask_to_apps", "apps"),
        "ask_to_classes": _ask("ask_to_classes", "classes"),
        "ask_to_methods": _ask("ask_to_methods", "methods"),
    }


def normalize_finish_slugs(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise TypeError("finish() expects a list of method slugs")
    slugs: List[str] = []
    for item in value:
        if isinstance(item, str):
            slugs.append(item)
        elif isinstance(item, dict) and isinstance(item.get("slug"), str):
            slugs.append(item["slug"])
        else:
            raise TypeError("finish() expects method slugs as strings")
    return slugs


class OperationHost:
    """
    Parent-side owner of the operations, the call budget and the finish signal.

    Both engine variants route every operation call through invoke(), so the
    budget and the finish state live in exactly one place per run.
    """

    def __init__(self, operations: Dict[str, Operation], budget: CallBudget):
        self.operations = dict(operations)
        self.budget = budget
        self._finish_slugs: Optional[List[str]] = None

    async def invoke(self, tool: str, args: Sequence[Any] = (), kwargs: Optional[Dict[str, Any]] = None) -> Any:
        kwargs = dict(kwargs or {})
        if tool == FINISH:
            return self.finish(*args, **kwargs)
        op = self.operations.get(tool)
        if op is None:
            raise SandboxViolation(f"Unknown operation '{tool}'")
        self.budget.charge(tool)
        return await op(*args, **kwargs)

    def finish(self, method_slugs: Any = None, **kwargs: Any) -> None:
        if kwargs:
            raise TypeError(f"finish() got unexpected arguments: {', '.join(sorted(kwargs))}")
        if self._finish_slugs is not None:
            raise LineExecutionError("finish() was already called in this run")
        self._finish_slugs = normalize_finish_slugs([] if method_slugs is None else method_slugs)
        logger.info("[sandbox] finish() called with %s method slugs", len(self._finish_slugs))
        return None

    def is_finish_called(self) -> bool:
        return self._finish_slugs is not None

    def get_finish_result(self) -> Optional[List[str]]:
        if self._finish_slugs is None:
            return None
        return list(self._finish_slugs)

    def reset_finish(self) -> None:
        self._finish_slugs = None
