from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from http.client import HTTPException, RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, request

from app.services.errors import ConfigError, EmptyTranscriptError, ProviderError
from app.services.scoring_prompts import (
    build_score_system_prompt,
    build_score_user_prompt,
    build_turn_scores_system_prompt,
    build_turn_scores_user_prompt,
)
from app.services.transcript_normalizer import count_answer_lines, to_qa_text

logger = logging.getLogger(__name__)

_SCORE_PATTERN = re.compile(r'"score"\s*:\s*(-?\d+(?:\.\d+)?)')
_SCORE_REASON_PATTERN = re.compile(r'"score_reason"\s*:\s*"((?:[^"\\]|\\.)*)"')
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class ScoreResult:
    score: int
    score_reason: str = ""
    full_analysis: str = ""
    turn_scores: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "score_reason": self.score_reason,
            "full_analysis": self.full_analysis,
            "turn_scores": [dict(item) for item in self.turn_scores],
        }


class OpenAIScoringClient:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        timeout_seconds: float = 60.0,
        api_base_url: str = "https://api.openai.com/v1",
        max_attempts: int = 2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.max_attempts = max(max_attempts, 1)

    def score(
        self,
        transcript: Sequence[Mapping[str, Any]],
        custom_instructions: str | None = None,
    ) -> ScoreResult:
        if not self.api_key:
            raise ConfigError("OPENAI_API_KEY is not configured.")

        qa_text = to_qa_text(transcript)
        if not qa_text:
            raise EmptyTranscriptError("Transcript is empty or has no readable Q/A turns.")
        answer_count = count_answer_lines(qa_text)

        raw_text = self._complete(
            system_prompt=build_score_system_prompt(custom_instructions),
            user_prompt=build_score_user_prompt(qa_text, answer_count),
        )
        result = self._parse_score_output(raw_text)

        if answer_count > 0 and not result.turn_scores:
            logger.warning(
                "Scoring returned no turn scores answer_count=%s; requesting turn scores only",
                answer_count,
            )
            result.turn_scores = self._recover_turn_scores(qa_text, answer_count)

        if len(result.turn_scores) != answer_count:
            logger.info(
                "Turn score count mismatch expected=%s received=%s",
                answer_count,
                len(result.turn_scores),
            )
        return result

    def _recover_turn_scores(self, qa_text: str, answer_count: int) -> list[dict[str, Any]]:
        try:
            raw_text = self._complete(
                system_prompt=build_turn_scores_system_prompt(answer_count),
                user_prompt=build_turn_scores_user_prompt(qa_text, answer_count),
            )
        except ProviderError as exc:
            logger.warning("Turn score recovery call failed error=%s", exc.message)
            return []

        parsed = self._loads_json_if_possible(raw_text)
        if parsed is None:
            logger.warning("Turn score recovery returned non-JSON output")
            return []
        return self._normalize_turn_scores(parsed.get("turn_scores"))

    def _parse_score_output(self, raw_text: str) -> ScoreResult:
        parsed = self._loads_json_if_possible(raw_text)
        if parsed is not None:
            full_analysis = _to_text(parsed.get("full_analysis"))
            return ScoreResult(
                score=clamp_score(parsed.get("score")),
                score_reason=_to_text(parsed.get("score_reason")),
                full_analysis=full_analysis or raw_text.strip(),
                turn_scores=self._normalize_turn_scores(parsed.get("turn_scores")),
            )

        # Older prompt format: a JSON line followed by free-text analysis.
        lines = raw_text.splitlines()
        for index, line in enumerate(lines):
            candidate = line.strip()
            if not candidate.startswith("{"):
                continue
            parsed_line = self._loads_json_if_possible(candidate)
            if parsed_line is None or not _is_number(parsed_line.get("score")):
                continue
            trailing_text = "\n".join(lines[index + 1 :]).strip()
            full_analysis = _to_text(parsed_line.get("full_analysis")) or trailing_text
            return ScoreResult(
                score=clamp_score(parsed_line.get("score")),
                score_reason=_to_text(parsed_line.get("score_reason")),
                full_analysis=full_analysis or raw_text.strip(),
                turn_scores=self._normalize_turn_scores(parsed_line.get("turn_scores")),
            )

        score_match = _SCORE_PATTERN.search(raw_text)
        reason_match = _SCORE_REASON_PATTERN.search(raw_text)
        return ScoreResult(
            score=clamp_score(score_match.group(1)) if score_match else 0,
            score_reason=re.sub(r"\\(.)", r"\1", reason_match.group(1)) if reason_match else "",
            full_analysis=raw_text.strip(),
        )

    def _normalize_turn_scores(self, raw_items: Any) -> list[dict[str, Any]]:
        if not isinstance(raw_items, list):
            return []

        turn_scores: list[dict[str, Any]] = []
        for raw_item in raw_items:
            if not isinstance(raw_item, Mapping):
                continue
            turn_scores.append(
                {
                    "question": _to_text(raw_item.get("question")),
                    "response": _to_text(raw_item.get("response")),
                    "score": clamp_score(raw_item.get("score")),
                    "score_reason": _to_text(raw_item.get("score_reason")),
                    "improvement": _to_text(raw_item.get("improvement")),
                },
            )
        return turn_scores

    def _complete(self, *, system_prompt: str, user_prompt: str) -> str:
        response_payload = self._post_chat_completion(
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "response_format": {"type": "json_object"},
            },
        )
        return self._extract_text_response(response_payload)

    def _post_chat_completion(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        req = request.Request(
            f"{self.api_base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )
        response_body: bytes | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise ProviderError("OpenAI request timed out.") from exc
            except RemoteDisconnected as exc:
                if attempt >= self.max_attempts:
                    raise ProviderError(
                        "OpenAI connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                if exc.code not in _RETRYABLE_STATUS_CODES or attempt >= self.max_attempts:
                    raise ProviderError(
                        f"OpenAI API HTTP {exc.code}: {_extract_error_message(body)}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= self.max_attempts:
                    raise ProviderError(f"OpenAI connection error: {exc.reason}") from exc
            except (OSError, HTTPException) as exc:
                # Resets and truncated bodies from urlopen or read().
                if attempt >= self.max_attempts:
                    raise ProviderError(f"OpenAI connection failed: {exc!r}") from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise ProviderError("OpenAI request failed after multiple attempts.")

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProviderError("OpenAI API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise ProviderError("OpenAI API response is not a JSON object.")
        api_error = parsed_body.get("error")
        if api_error:
            message = api_error.get("message") if isinstance(api_error, Mapping) else None
            raise ProviderError(f"OpenAI API error: {message or json.dumps(api_error)}")
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError("OpenAI API response missing choices.")

        first_choice = choices[0]
        if not isinstance(first_choice, Mapping):
            raise ProviderError("OpenAI API response choice is invalid.")

        message = first_choice.get("message")
        content = message.get("content") if isinstance(message, Mapping) else None
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("Empty content in OpenAI response.")
        return content

    def _loads_json_if_possible(self, value: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None

        if not isinstance(parsed, dict):
            return None
        return parsed


def clamp_score(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    bounded = min(max(number, 0.0), 100.0)
    return int(math.floor(bounded + 0.5))


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _extract_error_message(body: str) -> str:
    if not body:
        return "empty response body"
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body
    api_error = parsed.get("error") if isinstance(parsed, dict) else None
    if isinstance(api_error, Mapping) and api_error.get("message"):
        return str(api_error["message"])
    return body
