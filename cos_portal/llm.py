import json
import logging
import os
import re
from typing import Dict, Any, List, Optional

import requests

try:
    import ollama
except ImportError:
    ollama = None

from .errors import MalformedResponse, RateLimited, LLMTimeout, UpstreamError


class CompletionClient:
    """
    Thin wrapper over the configured text-completion provider.

    Provider failures are translated into the portal's typed errors so that
    callers can tell a rate limit or a timeout apart from anything else.
    """
    def __init__(self, config: Dict[str, Any]):
        """
        Initializes the client with the application's configuration.

        Args:
            config: The configuration dictionary from config.yaml.
        """
        self.llm_config = config.get('llm', {})
        self.provider = self.llm_config.get('active_provider', 'openai')
        self.temperature = float(self.llm_config.get('temperature', 0.1))
        self.max_tokens = int(self.llm_config.get('max_tokens', 4000))
        self.timeout = float(self.llm_config.get('timeout_seconds', 90))
        self.logger = logging.getLogger(__name__)

    def complete(self, prompt: str, system_prompt: Optional[str] = None, model: Optional[str] = None) -> str:
        """
        Sends one prompt and returns the raw completion text.

        Raises:
            RateLimited: The provider answered with HTTP 429.
            LLMTimeout: The request did not finish within timeout_seconds.
            UpstreamError: Any other provider or transport failure.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        self.logger.debug(f"Using LLM provider: {self.provider} (prompt length {len(prompt)}).")
        if self.provider == 'openai':
            return self._call_openai(messages, model)
        if self.provider == 'ollama':
            return self._call_ollama(messages, model)
        raise UpstreamError(f"Unsupported LLM provider: {self.provider}")

    def _call_openai(self, messages: List[Dict[str, str]], model: Optional[str]) -> str:
        """Helper to call an OpenAI-compatible chat completions endpoint."""
        cfg = self.llm_config.get('openai', {})
        api_key = cfg.get('api_key') or os.getenv('OPENAI_API_KEY')
        if not api_key:
            raise UpstreamError("OpenAI API key is not configured.")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}"
        }
        payload = {
            "model": model or cfg.get('model'),
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        try:
            response = requests.post(cfg.get('base_url'), headers=headers, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise LLMTimeout(f"Completion request timed out after {self.timeout:.0f}s: {e}")
        except requests.RequestException as e:
            raise UpstreamError(f"Completion request failed: {e}")

        if response.status_code == 429:
            raise RateLimited("Completion provider rate limit exceeded. Please wait a moment and try again.")
        if response.status_code >= 400:
            raise UpstreamError(f"Completion provider returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()['choices'][0]['message']['content'] or ""
        except (ValueError, KeyError, IndexError) as e:
            raise UpstreamError(f"Unexpected completion payload: {e}")

    def _call_ollama(self, messages: List[Dict[str, str]], model: Optional[str]) -> str:
        """Helper to call the Ollama API."""
        if not ollama:
            raise UpstreamError("Ollama library not installed.")
        cfg = self.llm_config.get('ollama', {})
        try:
            response = ollama.chat(
                model=model or cfg.get('model'),
                messages=messages,
                options={"temperature": self.temperature, "num_predict": self.max_tokens},
            )
        except ollama.ResponseError as e:
            if e.status_code == 429:
                raise RateLimited(f"Ollama rate limit exceeded: {e.error}")
            raise UpstreamError(f"Ollama request failed: {e.error}")
        except Exception as e:
            raise UpstreamError(f"Ollama request failed: {e}")
        return response['message']['content']


def parse_json_array(response: str) -> List[Dict[str, Any]]:
    """
    Pulls a JSON array of objects out of free-form completion text.

    A bare object is accepted and wrapped in a list. Code fences and
    surrounding prose are tolerated.

    Raises:
        MalformedResponse: No JSON array or object of objects could be parsed.
    """
    cleaned = re.sub(r"```(?:json)?", "", response or "").strip()
    candidates = []
    match = re.search(r'\[.*\]', cleaned, re.DOTALL)
    if match:
        candidates.append(match.group(0))
    match = re.search(r'\{.*\}', cleaned, re.DOTALL)
    if match:
        candidates.append(match.group(0))
    candidates.append(cleaned)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            data = [data]
        if isinstance(data, list) and all(isinstance(item, dict) for item in data):
            return data

    raise MalformedResponse("Completion did not contain a JSON array of records.", raw_response=response or "")
