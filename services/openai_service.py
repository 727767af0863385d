# services/openai_service.py
from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.config import require_openai, settings
from app.core.errors import MalformedOutputError
from app.core.logging import get_logger
from services.db_service import ai_log

logger = get_logger()

M = TypeVar("M", bound=BaseModel)

_JSON_HINT = (
    "Respond with exactly one valid JSON object. No explanation, no extra text, "
    "no markdown, no code fences."
)


def _extract_first_json(text: str) -> str:
    """
    Take the first {...} block, strip code fences and trailing commas.
    """
    cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip(), flags=re.IGNORECASE)
    m = re.search(r"\{.*\}", cleaned, flags=re.DOTALL)
    candidate = m.group(0) if m else cleaned
    candidate = re.sub(r",\s*([}\]])", r"\1", candidate)
    return candidate.strip()


def _to_jsonable(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(x) for x in obj]
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    if hasattr(obj, "model_dump"):
        return _to_jsonable(obj.model_dump())
    return str(obj)


def parse_model_output(raw_text: str, response_model: Type[M]) -> Tuple[M, Dict[str, Any]]:
    """
    Parse and validate one model reply. Any JSON or schema problem is a
    MalformedOutputError; the raw text travels along for the audit log.
    """
    candidate = _extract_first_json(raw_text or "")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(f"invalid JSON: {exc}", raw=raw_text) from exc
    if not isinstance(data, dict):
        raise MalformedOutputError("expected a JSON object", raw=raw_text)
    try:
        return response_model.model_validate(data), data
    except ValidationError as exc:
        raise MalformedOutputError(f"schema mismatch: {exc.error_count()} error(s)", raw=raw_text) from exc


class OpenAIService:
    """
    JSON-only chat completions with pydantic validation and an ai_logs audit row
    per call.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        max_retries: int = 2,
        timeout_s: int = 60,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        if client is None:
            require_openai()
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.OPENAI_MODEL
        self.max_retries = max_retries
        self.timeout_s = timeout_s

    def _build_messages(self, system_prompt: str, user_prompt: str, schema: Dict[str, Any]) -> list[dict]:
        schema_hint = json.dumps(schema, ensure_ascii=False)
        system = (
            f"{system_prompt}\n\n{_JSON_HINT}\n"
            f"The JSON must match this JSON Schema exactly:\n{schema_hint}"
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": f"{user_prompt}\n\n{_JSON_HINT}"},
        ]

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        response_model: Type[M],
        action_type: str = "generic",
        ranking_snapshot_id: Optional[int] = None,
    ) -> Tuple[M, Dict[str, Any]]:
        """
        Returns (parsed_model_instance, meta_dict).

        Transport errors are retried with backoff. A reply that does not parse
        or validate is retried with a stricter reminder; when every attempt is
        malformed, MalformedOutputError is raised.
        """
        schema = response_model.model_json_schema()
        messages = self._build_messages(system_prompt, user_prompt, schema)
        prompt_payload = {"system": system_prompt, "user": user_prompt, "schema": schema}

        last_err: Optional[Exception] = None
        last_raw: Optional[str] = None
        t0 = time.perf_counter()

        for attempt in range(self.max_retries + 1):
            try:
                completion = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0.2,
                    response_format={"type": "json_object"},
                    timeout=self.timeout_s,
                )
                raw_text = completion.choices[0].message.content or ""
                last_raw = raw_text
                usage_plain = _to_jsonable(getattr(completion, "usage", None))

                parsed, data = parse_model_output(raw_text, response_model)
                duration_ms = int((time.perf_counter() - t0) * 1000)

                await ai_log(
                    action_type=action_type,
                    prompt=prompt_payload,
                    raw_response={"raw": raw_text, "usage": usage_plain, "duration_ms": duration_ms},
                    validated_output=data,
                    model_used=self.model,
                    is_success=True,
                    error_message=None,
                    ranking_snapshot_id=ranking_snapshot_id,
                )
                return parsed, {
                    "ok": True,
                    "model": self.model,
                    "usage": usage_plain,
                    "duration_ms": duration_ms,
                    "attempts": attempt + 1,
                }

            except MalformedOutputError as e:
                last_err = e
                logger.warning("openai_output_malformed", action_type=action_type, attempt=attempt + 1, error=str(e))
                messages[-1]["content"] = (
                    f"{user_prompt}\n\nIMPORTANT: {_JSON_HINT}\n"
                    "Answer strictly according to the schema, nothing else."
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(0.7 * (2 ** attempt))

            except Exception as e:
                last_err = e
                logger.warning(
                    "openai_call_failed",
                    action_type=action_type,
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(0.9 * (2 ** attempt))

        duration_ms = int((time.perf_counter() - t0) * 1000)
        await ai_log(
            action_type=action_type,
            prompt=prompt_payload,
            raw_response={"raw": last_raw, "usage": None, "duration_ms": duration_ms},
            validated_output=None,
            model_used=self.model,
            is_success=False,
            error_message=str(last_err),
            ranking_snapshot_id=ranking_snapshot_id,
        )
        if isinstance(last_err, MalformedOutputError):
            raise last_err
        raise RuntimeError(f"OpenAIService failed after retries: {last_err}") from last_err
