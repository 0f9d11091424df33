"""Natural-language order interpreter backed by a remote text-completion API.

The interpreter turns a pasted chat message ("2 coffees and a croissant
please") into ``(product_name, quantity)`` pairs. Its output is untrusted:
:meth:`pos_ledger.core_logic.InventoryCoordinator.apply_parsed_order` checks
every pair against the live catalog before anything reaches a cart.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional, Sequence, Tuple

import requests

from . import data_manager, log
from .core_logic import ExternalServiceError, ValidationError


API_KEY_HEADER = "x-goog-api-key"

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)

PROMPT_TEMPLATE = (
    "You are a point-of-sale assistant. Analyse the following order text and "
    "extract the products and their quantities. Rules: "
    "1. You may only return products that exist in this list: [{products}]. "
    "2. Ignore any product that is not in the list. "
    "3. Ignore greetings, farewells and any other conversation that is not part "
    "of the order. "
    "4. Your answer MUST be only a JSON array where each object contains "
    "\"productName\" and \"quantity\". Do not include any text before or after "
    "the JSON. "
    "Order text to analyse: \"{order}\""
)


def build_prompt(order_text: str, product_names: Sequence[str]) -> str:
    return PROMPT_TEMPLATE.format(products=", ".join(product_names), order=order_text)


def strip_code_fences(raw_text: str) -> str:
    """Remove Markdown code fences the model sometimes wraps JSON in."""
    return _FENCE_PATTERN.sub("", raw_text).strip()


def extract_candidate_text(payload: Any) -> str:
    """Pull ``candidates[0].content.parts[0].text`` out of a response body.

    Raises:
        ExternalServiceError: If the body does not have the expected shape.
    """
    try:
        candidates = payload["candidates"]
        if not candidates:
            raise ExternalServiceError("The AI response contained no candidates")
        text = candidates[0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        log.error("Unexpected AI response shape: %s", exc)
        raise ExternalServiceError("The AI response does not have the expected format") from exc
    if not isinstance(text, str):
        raise ExternalServiceError("The AI response does not have the expected format")
    return text


def parse_order_pairs(raw_text: str) -> List[Tuple[str, Any]]:
    """Decode the model's JSON array into ``(productName, quantity)`` pairs.

    Entries that are not objects or lack ``productName`` are ignored; the
    quantity is passed through untouched for the coordinator to validate.

    Raises:
        ExternalServiceError: If the text is not a JSON array.
    """
    try:
        decoded = json.loads(strip_code_fences(raw_text))
    except json.JSONDecodeError as exc:
        log.error("AI response is not valid JSON: %s", exc)
        raise ExternalServiceError("The AI response is not valid JSON") from exc
    if not isinstance(decoded, list):
        raise ExternalServiceError("The AI response is not a JSON array")

    pairs: List[Tuple[str, Any]] = []
    for entry in decoded:
        if not isinstance(entry, dict) or not entry.get("productName"):
            log.debug("Ignoring malformed order entry: %r", entry)
            continue
        pairs.append((str(entry["productName"]), entry.get("quantity")))
    return pairs


class OrderInterpreter:
    """Client for a Gemini-style ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = data_manager.DEFAULT_MODEL,
        endpoint: str = data_manager.DEFAULT_ENDPOINT,
        timeout: float = data_manager.DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "OrderInterpreter":
        return cls(
            settings.api_key,
            model=settings.model,
            endpoint=settings.endpoint,
            timeout=settings.timeout_seconds,
        )

    @property
    def url(self) -> str:
        return self.endpoint.format(model=self.model)

    def request_completion(self, prompt: str) -> str:
        """Send ``prompt`` to the service and return the generated text.

        Raises:
            ExternalServiceError: If no API key is configured, the request
                fails, or the response cannot be decoded.
        """
        if not self.api_key:
            raise ExternalServiceError("No API key configured for the order interpreter")

        body = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            response = self.session.post(
                self.url,
                headers={API_KEY_HEADER: self.api_key},
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            log.error("Order interpreter request failed: %s", exc)
            raise ExternalServiceError(f"Could not reach the order interpreter: {exc}") from exc
        except ValueError as exc:
            log.error("Order interpreter returned a non-JSON body: %s", exc)
            raise ExternalServiceError("The order interpreter returned an invalid response") from exc

        return extract_candidate_text(payload)

    def interpret(self, order_text: str, product_names: Sequence[str]) -> List[Tuple[str, Any]]:
        """Return best-effort ``(product_name, quantity)`` pairs for ``order_text``.

        Raises:
            ValidationError: If ``order_text`` is blank.
            ExternalServiceError: On any network or format failure.
        """
        if not order_text or not order_text.strip():
            raise ValidationError("The order text is empty")
        log.info("Interpreting order of %d character(s) against %d product(s)", len(order_text), len(product_names))
        raw_text = self.request_completion(build_prompt(order_text, product_names))
        pairs = parse_order_pairs(raw_text)
        log.info("Order interpreter returned %d line(s)", len(pairs))
        return pairs
