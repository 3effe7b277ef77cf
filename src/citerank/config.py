from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env into os.environ so non-prefixed vars (e.g. GEMINI_API_KEY) are available
load_dotenv()


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "CITERANK_",
        "env_file": ".env",
        "extra": "ignore",
    }

    # Models
    embedding_model: str = "all-MiniLM-L6-v2"
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    reranker_backend: str = "heuristic"  # "heuristic" or "cross_encoder"
    llm_model: str = "gemini-2.5-flash"
    llm_temperature: float = 0.1
    llm_max_output_tokens: int = 300
    llm_timeout_seconds: float = 10.0
    llm_max_retries: int = 0

    # Chunking
    chunk_size: int = 500
    chunk_overlap: int = 50

    # Retrieval
    retriever_backend: str = "tfidf"  # "tfidf" or "embedding"
    retrieval_top_k: int = 10
    retrieval_min_similarity: float = 0.1

    # Filtering / reranking
    filtering_mode: str = "rerank"  # "none", "threshold" or "rerank"
    similarity_threshold: float = 0.3
    max_chunks: int = 3
    adaptive_threshold: bool = False
    rerank_jitter: float = 0.0

    # Citations
    source_base_url: str = "https://docs.company.com/"
    citation_similarity_threshold: float = 0.2
    citation_max_chunks: int = 4

    # Prompting
    max_context_chars: int = 2000

    # Paths
    docs_dir: Path = Path("./docs")
    data_dir: Path = Path("./data")
    index_path: Path = Path("./data/tfidf_index.json")

    # Evaluation thresholds
    eval_golden_path: Path = Path("./eval/golden.jsonl")
    eval_answer_quality_threshold: float = 0.7
    eval_citation_quality_threshold: float = 0.6
    eval_source_compliance_threshold: float = 0.5
    eval_max_workers: int = 4

    @property
    def gemini_api_key(self) -> str:
        return os.environ.get("GEMINI_API_KEY", "")


settings = Settings()
