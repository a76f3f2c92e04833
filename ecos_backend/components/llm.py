from typing import Dict, List, Optional
import logging

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ecos_backend import config

logger = logging.getLogger(__name__)


class LLM:
    """
    Chat model used both as the simulated patient and as the grader.

    Stateless: every call receives the full message history as
    [{"role": "system"|"user"|"assistant", "content": "..."}].
    Provider is selected by LLM_PROVIDER ("openrouter", "ollama" or "mock").
    """

    def __init__(self, provider: Optional[str] = None, model: Optional[str] = None):
        self.provider = (provider or config.LLM_PROVIDER).lower().strip()
        self._models: Dict[float, object] = {}
        self._mock = None

        if self.provider == "openrouter":
            self.api_key = config.OPENROUTER_API_KEY
            self.model = model or config.OPENROUTER_MODEL
            if not self.api_key:
                logger.warning("LLM: OPENROUTER_API_KEY not set. LLM will not work.")
            logger.info(f"LLM: Using OpenRouter model {self.model}")
        elif self.provider == "ollama":
            self.api_key = None
            self.model = model or config.OLLAMA_MODEL
            logger.info(f"LLM: Using Ollama model {self.model} at {config.OLLAMA_BASE_URL}")
        elif self.provider == "mock":
            from ecos_backend.ecos_judge.backends.mock_backend import MockBackend

            self.api_key = None
            self.model = model or "mock"
            self._mock = MockBackend(model_name=self.model)
        else:
            raise ValueError(f"LLM: Unknown provider '{self.provider}'. Use 'openrouter', 'ollama' or 'mock'")

    def _build_model(self, temperature: float):
        if self.provider == "openrouter":
            if not self.api_key:
                raise RuntimeError("OPENROUTER_API_KEY is not set")
            from langchain_openai import ChatOpenAI

            return ChatOpenAI(
                model=self.model,
                openai_api_key=self.api_key,
                openai_api_base=config.OPENROUTER_BASE_URL,
                temperature=temperature,
                max_tokens=config.GRADER_MAX_TOKENS if temperature < 0.5 else config.LLM_MAX_TOKENS,
                timeout=max(config.LLM_TIMEOUT_SEC, config.JUDGE_TIMEOUT_SEC),
            )

        from langchain_community.chat_models import ChatOllama

        return ChatOllama(
            model=self.model,
            base_url=config.OLLAMA_BASE_URL,
            temperature=temperature,
            num_predict=config.GRADER_MAX_TOKENS if temperature < 0.5 else config.LLM_MAX_TOKENS,
        )

    def _model_for(self, temperature: float):
        # one client per temperature (patient 0.7, grader 0.3)
        if temperature not in self._models:
            self._models[temperature] = self._build_model(temperature)
        return self._models[temperature]

    @staticmethod
    def _convert_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
        """Convert role/content dicts to LangChain message format"""
        converted: List[BaseMessage] = []
        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")
            if role == "system":
                converted.append(SystemMessage(content=content))
            elif role == "assistant":
                converted.append(AIMessage(content=content))
            else:
                converted.append(HumanMessage(content=content))
        return converted

    async def chat(self, messages: List[Dict[str, str]], temperature: float) -> str:
        """Send the full history and return the raw text of the answer"""
        if self._mock is not None:
            return self._mock.generate(messages)

        logger.info(
            "LLM: Generating response (messages: %s, temperature: %s)",
            len(messages),
            temperature,
        )
        model = self._model_for(temperature)
        response = await model.ainvoke(self._convert_messages(messages))
        text = (response.content or "").strip()
        logger.debug(f"LLM: Generated response: {text[:100]}...")
        return text
