import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import GenerationFailure
from .formatting import NO_OUTPUT
from .llm import message_content
from .prompts import CONTINUE_PROMPT, FINAL_STEP_PROMPT, SELECTOR_FIRST_USER, SELECTOR_SYSTEM
from .schemas import ExecutionHistoryItem, GeneratedScript, Thought

logger = logging.getLogger("uvicorn.error")

CHAT_HISTORY_LIMIT = 6
CHAT_MESSAGE_MAX_CHARS = 500


def _strip_fences(text: str) -> str:
    raw = text.strip()
    if raw.startswith("```"):
        raw = raw.split("\n", 1)[1] if "\n" in raw else ""
        if raw.rstrip().endswith("```"):
            raw = raw.rstrip()[:-3]
    return raw.strip()


def parse_script_response(content: Optional[str]) -> GeneratedScript:
    if not content or not content.strip():
        raise GenerationFailure("No content in model response")
    raw = _strip_fences(content)
    if not raw or raw[0] != "{":
        raise GenerationFailure("Model response is not a JSON object", {"content": content[:500]})
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GenerationFailure(f"Failed to parse model response: {exc}", {"content": content[:500]}) from exc
    if not isinstance(parsed, dict):
        raise GenerationFailure("Model response is not a JSON object", {"content": content[:500]})
    lines = parsed.get("lines")
    if not isinstance(lines, list):
        lines = []
    thought = parsed.get("thought")
    reasoning: Optional[str] = None
    if isinstance(thought, dict) and isinstance(thought.get("reasoning"), str):
        reasoning = thought["reasoning"] or None
    elif isinstance(thought, str):
        reasoning = thought or None
    return GeneratedScript(
        lines=[line for line in lines if isinstance(line, str)],
        thought=Thought(reasoning=reasoning),
    )


def format_history_turn(item: ExecutionHistoryItem) -> str:
    numbered = "\n".join(f"{idx + 1}. {line}" for idx, line in enumerate(item.lines))
    outputs = [
        output.formatted_output.strip()
        for output in item.result.outputs
        if output.formatted_output.strip() and output.formatted_output.strip() != NO_OUTPUT
    ]
    thought = json.dumps(item.thought.model_dump(exclude_none=True), ensure_ascii=False)
    return f"Lines executed:\n{numbered}\n\nThought: {thought}\n\nREPL Output:\n" + "\n\n".join(outputs)


def _format_chat_history(chat_history: Optional[Sequence[Any]]) -> str:
    if not chat_history:
        return ""
    rows: List[str] = []
    for msg in list(chat_history)[-CHAT_HISTORY_LIMIT:]:
        if isinstance(msg, dict):
            role, content = msg.get("role"), msg.get("content")
        else:
            role, content = getattr(msg, "role", None), getattr(msg, "content", None)
        if not isinstance(content, str) or not content.strip():
            continue
        text = content.strip()
        if len(text) > CHAT_MESSAGE_MAX_CHARS:
            text = text[:CHAT_MESSAGE_MAX_CHARS].rstrip() + "..."
        rows.append(f"{role or 'user'}: {text}")
    if not rows:
        return ""
    return "\nRecent conversation (for context):\n" + "\n".join(rows) + "\n"


class ScriptGenerator:
    """One model call per step: history in, next lines plus a reasoning note out."""

    def __init__(
        self,
        llm_client: Any,
        catalog: Any,
        *,
        model: str,
        timeout_s: float = 180.0,
        max_calls: int = 30,
    ):
        self.llm_client = llm_client
        self.catalog = catalog
        self.model = model
        self.timeout_s = timeout_s
        self.max_calls = max_calls

    async def prepare_initial_context(
        self,
        query: str,
        chat_history: Optional[Sequence[Any]] = None,
        max_steps: int = 3,
    ) -> Tuple[str, str]:
        categories = await self.catalog.list_categories()
        seen: Dict[str, Any] = {}
        for cat in categories:
            seen.setdefault(cat.slug, cat)
        categories_list = ", ".join(f"`{cat.slug}` ({cat.name})" for cat in seen.values())
        system_prompt = SELECTOR_SYSTEM.format(
            categories=categories_list or "No categories available",
            max_calls=self.max_calls,
        ).strip()
        user_prompt = SELECTOR_FIRST_USER.format(
            query=query,
            history=_format_chat_history(chat_history),
            max_steps=max_steps,
        ).strip()
        return system_prompt, user_prompt

    def build_messages(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Sequence[ExecutionHistoryItem],
        step: int,
        max_steps: int,
    ) -> List[Dict[str, str]]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        for item in history:
            messages.append({"role": "assistant", "content": format_history_turn(item)})
            messages.append({"role": "user", "content": CONTINUE_PROMPT})
        if step >= max_steps:
            messages.append({"role": "user", "content": FINAL_STEP_PROMPT.format(step=step, max_steps=max_steps)})
        return messages

    async def generate_next_script(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Sequence[ExecutionHistoryItem],
        step: int,
        max_steps: int,
    ) -> GeneratedScript:
        messages = self.build_messages(system_prompt, user_prompt, history, step, max_steps)
        total_chars = sum(len(msg["content"]) for msg in messages)
        logger.info(
            "[tool-selector] step %s/%s: calling %s (~%s tokens, %s messages)",
            step,
            max_steps,
            self.model,
            (total_chars + 3) // 4,
            len(messages),
        )
        try:
            response = await self.llm_client.chat_completion(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                timeout=self.timeout_s,
            )
            return parse_script_response(message_content(response))
        except GenerationFailure as exc:
            logger.warning("[tool-selector] step %s/%s: %s", step, max_steps, exc.message)
            return GeneratedScript(lines=[], thought=Thought(reasoning=exc.message))
        except Exception as exc:
            logger.warning("[tool-selector] step %s/%s: model call failed: %s", step, max_steps, exc)
            return GeneratedScript(lines=[], thought=Thought(reasoning=f"Model call failed: {str(exc) or type(exc).__name__}"))
