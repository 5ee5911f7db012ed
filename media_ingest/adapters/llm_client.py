"""OpenAI completion adapter for low-confidence caption parsing.

Implements AICompletionPort: the caption goes in as the user message, a JSON
object comes back as text.
"""

import hashlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import yaml
from openai import APIError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import LLMAPIError, ValidationError

PREVIEW_LENGTH_RESPONSE: Final[int] = 300
"""Maximum characters of a response preview included in debug logs."""

DEFAULT_PROMPT_PATH: Final[Path] = Path("config/prompts/caption.yaml")

logger = get_logger(__name__)


@dataclass(frozen=True)
class PromptFileData:
    """Loaded prompt payload with metadata."""

    content: str
    version: str | None
    checksum: str
    size_bytes: int
    path: Path


@dataclass
class _PromptCacheEntry:
    mtime: float
    data: PromptFileData


_PROMPT_CACHE: dict[Path, _PromptCacheEntry] = {}


def load_prompt_from_file(file_path: str | Path) -> PromptFileData:
    """Load a prompt file, reusing the cached copy while its mtime is unchanged.

    YAML prompts must be a mapping with ``version`` and ``system`` strings; any
    other file is taken verbatim as the system prompt.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a YAML prompt file has an invalid structure
    """
    raw_path = Path(file_path).expanduser()
    path = raw_path if raw_path.is_absolute() else (Path.cwd() / raw_path).resolve()

    if not path.exists():
        repo_root = Path(__file__).resolve().parents[2]
        alt_path = (repo_root / raw_path).resolve()
        if alt_path.exists():
            path = alt_path
        else:
            raise FileNotFoundError(f"Prompt file not found: {file_path}")

    stat_result = path.stat()
    cache_entry = _PROMPT_CACHE.get(path)
    if cache_entry and cache_entry.mtime == stat_result.st_mtime:
        return cache_entry.data

    if path.suffix.lower() in {".yaml", ".yml"}:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError(f"Prompt YAML must be a mapping: {path}")

        version = parsed.get("version")
        if not isinstance(version, str):
            raise ValueError(f"Prompt YAML missing 'version' string: {path}")

        system_prompt = parsed.get("system")
        if not isinstance(system_prompt, str):
            raise ValueError(f"Prompt YAML missing 'system' string: {path}")
    else:
        system_prompt = path.read_text(encoding="utf-8")
        version = None

    encoded = system_prompt.encode("utf-8")
    prompt_data = PromptFileData(
        content=system_prompt,
        version=version,
        checksum=hashlib.sha256(encoded).hexdigest(),
        size_bytes=len(encoded),
        path=path,
    )
    _PROMPT_CACHE[path] = _PromptCacheEntry(
        mtime=stat_result.st_mtime, data=prompt_data
    )
    return prompt_data


class OpenAICompletionClient:
    """OpenAI chat completion in JSON mode."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        timeout: int = 30,
        prompt_file: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: OpenAI API key
            model: Model name
            temperature: Sampling temperature
            timeout: Request timeout in seconds
            prompt_file: Path to the system prompt (defaults to the caption prompt)
            client: Preconfigured OpenAI client (tests)
        """
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.temperature = temperature

        prompt_data = load_prompt_from_file(prompt_file or DEFAULT_PROMPT_PATH)
        self.system_prompt = prompt_data.content
        self.prompt_version = prompt_data.version
        self.prompt_hash = prompt_data.checksum

        logger.info(
            "llm_system_prompt_ready",
            prompt_hash=self.prompt_hash,
            prompt_version=self.prompt_version,
            prompt_path=str(prompt_data.path),
            prompt_size_bytes=prompt_data.size_bytes,
        )

    def complete(self, prompt: str) -> str:
        """Return the raw JSON text the model produced for ``prompt``.

        Raises:
            LLMAPIError: On API communication errors
            ValidationError: On an empty response
        """
        start_time = time.time()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": f"Caption:\n{prompt}"},
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIRateLimitError as e:
            logger.warning(
                "llm_rate_limited",
                latency_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )
            raise LLMAPIError(f"Rate limit exceeded: {e}") from e
        except APIError as e:
            logger.warning(
                "llm_api_error",
                latency_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )
            raise LLMAPIError(f"OpenAI API error: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ValidationError("Empty response from LLM")

        usage = response.usage
        logger.info(
            "llm_completion_received",
            model=self.model,
            latency_ms=latency_ms,
            tokens_in=usage.prompt_tokens if usage else 0,
            tokens_out=usage.completion_tokens if usage else 0,
        )
        logger.debug("llm_response_preview", preview=content[:PREVIEW_LENGTH_RESPONSE])
        return content
