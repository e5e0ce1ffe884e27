from abc import abstractmethod
from typing import Any, Dict, List

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from backend.src.core.errors import ProviderError
from backend.src.services.llm.base import ChatProvider, Completion

ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


def to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    return [ROLE_TO_MESSAGE[m["role"]](content=m["content"]) for m in messages]


def _text_of(content: Any) -> str:
    # Gemini may answer with a list of parts instead of a plain string
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


class LangChainProvider(ChatProvider):
    """Shared plumbing for providers backed by a LangChain chat model."""

    @abstractmethod
    def _build_model(self, model: str, temperature: float, max_tokens: int):
        """Fresh LangChain chat model for one attempt."""

    async def _complete(self, messages: List[Dict[str, str]], options: Dict[str, Any]) -> Completion:
        model = options.get("model") or self.model
        chat_model = self._build_model(
            model,
            options.get("temperature", self.temperature),
            options.get("max_tokens", self.max_tokens),
        )
        response = await chat_model.ainvoke(to_langchain_messages(messages))

        content = _text_of(response.content).strip()
        if not content:
            raise ProviderError(f"Invalid response from {self.name}: empty content", error_code="EMPTY_RESPONSE")

        usage = getattr(response, "usage_metadata", None) or {}
        metadata = getattr(response, "response_metadata", None) or {}
        return Completion(
            content=content,
            model=metadata.get("model_name") or metadata.get("model") or model,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )


# --- BLOCK 1: OPENAI ---
class OpenAIProvider(LangChainProvider):
    name = "openai"
    default_model = "gpt-4"

    def _build_model(self, model, temperature, max_tokens):
        return ChatOpenAI(
            model=model,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=self.request_timeout,
            max_retries=0,  # RetryPolicy owns retries
        )


# --- BLOCK 2: GROQ (OpenAI-compatible endpoint) ---
class GroqProvider(OpenAIProvider):
    name = "groq"
    default_model = "llama-3.1-8b-instant"
    default_base_url = "https://api.groq.com/openai/v1"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = self.base_url or self.default_base_url


# --- BLOCK 3: GOOGLE GEMINI ---
class GoogleProvider(LangChainProvider):
    name = "google"
    default_model = "gemini-1.5-flash"

    def _build_model(self, model, temperature, max_tokens):
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=self.api_key,
            temperature=temperature,
            max_output_tokens=max_tokens,
            timeout=self.request_timeout,
            max_retries=0,
        )
