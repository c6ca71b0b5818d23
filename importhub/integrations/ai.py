"""
AI collaborators: account summaries, account insights and text embeddings.

Summaries and insights use a LangChain chat model (Anthropic by default).
Embeddings go through the ``langchain_core`` ``Embeddings`` interface so any
provider can be plugged in; the bundled one wraps sentence-transformers and is
only built when ``EMBEDDING_MODEL`` is configured.
"""
import logging
from typing import Any, Dict, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from importhub.core.config import Settings

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    ("name", "Company"),
    ("domain", "Domain"),
    ("industry", "Industry"),
    ("size", "Size"),
    ("location", "Location"),
    ("customer_segment", "Customer segment"),
    ("gem_status", "GEM status"),
    ("target_solutions", "Target solutions"),
    ("recommended_solution", "Recommended solution"),
    ("description", "Description"),
    ("summary", "Summary"),
)

ACCOUNT_SUMMARY_PROMPT = """You are preparing account briefs for a B2B sales team.
Write one concise paragraph (at most 120 words) summarizing the company below:
what it does, its size and market, and anything notable for a seller.
Use only the facts provided. Do not invent figures.

{profile}"""

ACCOUNT_INSIGHT_PROMPT = """You are a sales strategist. Based on the account profile
below, list 3 to 5 concrete insights a seller can act on: likely needs,
solution fit, risks and a suggested next step. Keep each insight to one or two
sentences and use only the facts provided.

{profile}"""


def account_profile(account: Any) -> Dict[str, Any]:
    """Plain dict of the profile fields present on an account row or mapping."""
    profile = {}
    for attr, _ in PROFILE_FIELDS:
        if isinstance(account, dict):
            value = account.get(attr)
        else:
            value = getattr(account, attr, None)
        if value not in (None, ""):
            profile[attr] = value
    return profile


def account_profile_text(account: Any) -> str:
    profile = account_profile(account)
    return "\n".join(f"{label}: {profile[attr]}" for attr, label in PROFILE_FIELDS if attr in profile)


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Anthropic may return content blocks
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(block.get("text", ""))
            else:
                parts.append(str(block))
        content = "".join(parts)
    return str(content).strip()


def build_chat_model(settings: Settings) -> Optional[BaseChatModel]:
    """Return the configured chat model, or None when no API key is set."""
    if not settings.anthropic_api_key:
        logger.info("ANTHROPIC_API_KEY not set; AI summaries and insights are disabled")
        return None
    return ChatAnthropic(
        model=settings.llm_model,
        api_key=settings.anthropic_api_key,
        temperature=0,
        max_tokens=1024,
        timeout=settings.llm_api_timeout,
        max_retries=settings.llm_max_retries,
    )


class AccountSummarizer:
    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    def summarize_account(self, account: Any) -> str:
        profile = account_profile_text(account)
        if not profile:
            raise ValueError("Account has no profile fields to summarize")
        message = HumanMessage(content=ACCOUNT_SUMMARY_PROMPT.format(profile=profile))
        summary = _response_text(self.llm.invoke([message]))
        if not summary:
            raise ValueError("Model returned an empty summary")
        return summary


class InsightGenerator:
    """Generates free-text account insights for the ``insights`` job type."""

    def __init__(self, llm: BaseChatModel, model_name: Optional[str] = None):
        self.llm = llm
        self.model_name = model_name or getattr(llm, "model", None)

    def generate(self, account: Any) -> str:
        profile = account_profile_text(account)
        message = HumanMessage(content=ACCOUNT_INSIGHT_PROMPT.format(profile=profile))
        insight = _response_text(self.llm.invoke([message]))
        if not insight:
            raise ValueError("Model returned an empty insight")
        return insight


class SentenceTransformerEmbeddings(Embeddings):
    """Local embedding model; loaded on first use."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.model_name, device="cpu")
            self._model.eval()
        return self._model

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        model = self._get_model()
        vectors = model.encode(
            texts,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [vector.tolist() for vector in vectors]

    def embed_query(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]


def build_embeddings(settings: Settings) -> Optional[Embeddings]:
    if not settings.embedding_model:
        logger.info("EMBEDDING_MODEL not set; vector storage is disabled")
        return None
    return SentenceTransformerEmbeddings(settings.embedding_model)
