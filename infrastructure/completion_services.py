# infrastructure/completion_services.py
import logging
from typing import Dict, List, Optional

import requests

from config import settings
from core.exceptions import CompletionError
from core.interfaces import ICompletionBackend

logger = logging.getLogger(settings.LOGGER_NAME)


class OllamaCompletionBackend(ICompletionBackend):
    """Completion capability backed by a local Ollama chat API."""

    def __init__(
        self,
        base_url: str = settings.LLM_BASE_URL,
        model: str = settings.LLM_MODEL_NAME,
        timeout: int = settings.REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: The base URL of the LLM API.
            model: The name of the model to use.
            timeout: The request timeout in seconds.
            session: Optional requests session (shared connection pool, test doubles).
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = session or requests.Session()

    def complete(self, messages: List[Dict[str, str]]) -> str:
        if not messages:
            raise CompletionError("No messages provided")

        try:
            logger.info(f"Sending {len(messages)} messages to LLM model '{self.model}'...")
            response = self._session.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": self.model,
                    "messages": messages,
                    "stream": False,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()

        except requests.exceptions.Timeout:
            logger.error(f"LLM request timed out after {self.timeout} seconds.")
            raise CompletionError("LLM request timed out") from None
        except requests.exceptions.ConnectionError:
            logger.error(f"Cannot connect to LLM at {self.base_url}. Is the service running?")
            raise CompletionError("Cannot connect to LLM service") from None
        except requests.exceptions.HTTPError as e:
            logger.error(f"LLM service returned an error: {e.response.status_code} {e.response.text}")
            raise CompletionError(f"LLM error: {e.response.status_code}") from e
        except ValueError as e:
            logger.error(f"LLM returned a non-JSON response: {e}")
            raise CompletionError("Malformed response from LLM") from e

        content = (result.get("message") or {}).get("content")
        if not content or not content.strip():
            logger.error("LLM response was empty or malformed.")
            raise CompletionError("Empty response from LLM")

        logger.info("Successfully received response from LLM.")
        return content.strip()
