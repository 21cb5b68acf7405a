"""Direct ONNX Runtime embedding backend.

Implements EmbeddingBackend using onnxruntime, tokenizers and
huggingface_hub directly, without sentence-transformers or torch.

Default model: Alibaba-NLP/gte-base-en-v1.5 (768-dim, 8-bit quantized ONNX
export), mean-pooled over the attention mask and L2-normalized.
"""

from __future__ import annotations

import logging
import time as _time
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from focusml_mcp.exceptions import ConfigurationError
from focusml_mcp.models.schema import LoadProgress
from focusml_mcp.services.embedding_types import ProgressCallback

logger = logging.getLogger(__name__)

# Lazy imports: populated by _ensure_imports() on first load
_ort = None
_tokenizers = None
_hf_hub = None

FALLBACK_ONNX_FILENAME = "onnx/model.onnx"


def _ensure_imports() -> None:
    """Import runtime dependencies, raising a clear error if missing."""
    global _ort, _tokenizers, _hf_hub
    if _ort is None:
        try:
            import onnxruntime as ort

            _ort = ort
        except ImportError:
            raise ImportError(
                "onnxruntime is required for embeddings. "
                "Install with: pip install focusml-mcp"
            )
    if _tokenizers is None:
        try:
            import tokenizers as tok

            _tokenizers = tok
        except ImportError:
            raise ImportError(
                "tokenizers is required for embeddings. "
                "Install with: pip install focusml-mcp"
            )
    if _hf_hub is None:
        try:
            import huggingface_hub as hfh

            _hf_hub = hfh
        except ImportError:
            raise ImportError(
                "huggingface-hub is required for embeddings. "
                "Install with: pip install focusml-mcp"
            )


def resolve_providers(preference: str = "cpu") -> List[str]:
    """Resolve ONNX execution providers from a preference string.

    Args:
        preference: One of:
            - "cpu": CPUExecutionProvider only
            - "auto": CUDA when available, always followed by CPU
            - comma-separated list: used as-is

    Returns:
        Ordered list of provider names for ort.InferenceSession.

    Raises:
        ConfigurationError: If the preference names no provider.
    """
    pref = preference.strip().lower()

    if pref == "cpu":
        return ["CPUExecutionProvider"]

    if pref == "auto":
        _ensure_imports()
        available = _ort.get_available_providers()
        providers = []
        if "CUDAExecutionProvider" in available:
            providers.append("CUDAExecutionProvider")
        providers.append("CPUExecutionProvider")
        return providers

    providers = [p.strip() for p in preference.split(",") if p.strip()]
    if not providers:
        raise ConfigurationError(
            f"No ONNX execution providers in {preference!r}",
            config_key="onnx_providers",
        )
    return providers


def mean_pool(hidden_states: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token vectors, ignoring padded positions.

    Args:
        hidden_states: (batch, seq_len, hidden) token representations.
        attention_mask: (batch, seq_len) mask, 1 for real tokens.

    Returns:
        (batch, hidden) pooled vectors.
    """
    mask = np.expand_dims(attention_mask, -1).astype(hidden_states.dtype)
    summed = np.sum(hidden_states * mask, axis=1)
    counts = np.clip(np.sum(mask, axis=1), a_min=1e-9, a_max=None)
    return summed / counts


def l2_normalize(embeddings: np.ndarray) -> np.ndarray:
    """Scale each row to unit length (zero rows stay zero)."""
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-12)
    return embeddings / norms


class OnnxEmbeddingBackend:
    """Embedding backend using direct ONNX Runtime inference.

    Downloads the tokenizer and ONNX weights from the Hugging Face Hub,
    builds an inference session, and embeds text with mean pooling and L2
    normalization.

    Args:
        model_id: Hugging Face model ID.
        onnx_filename: Path to the ONNX model file within the repo. Falls
            back to ``onnx/model.onnx`` when the file is missing.
        max_length: Maximum token length for truncation.
        cache_dir: Optional custom cache directory for model files.
        providers: Provider preference string ("cpu", "auto", or comma-separated).
    """

    # The tokenizer's padding/truncation state is mutable; keep calls serialized.
    reentrant = False

    def __init__(
        self,
        model_id: str = "Alibaba-NLP/gte-base-en-v1.5",
        onnx_filename: str = "onnx/model_quantized.onnx",
        max_length: int = 1024,
        cache_dir: Optional[Path] = None,
        providers: str = "cpu",
    ) -> None:
        self._model_id = model_id
        self._onnx_filename = onnx_filename
        self._max_length = max_length
        self._cache_dir = cache_dir
        self._providers_pref = providers
        self._session: Optional[object] = None  # ort.InferenceSession
        self._tokenizer: Optional[object] = None  # tokenizers.Tokenizer
        self._input_names: frozenset = frozenset()
        self._dim: int = 768

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _download(self, progress: Optional[ProgressCallback]) -> Path:
        """Fetch tokenizer and model files, returning the snapshot directory."""
        _report(progress, "download", f"Downloading {self._model_id}", 0.05)
        patterns = [
            self._onnx_filename,
            FALLBACK_ONNX_FILENAME,
            "tokenizer.json",
            "tokenizer_config.json",
            "config.json",
        ]
        snapshot_dir = _hf_hub.snapshot_download(
            repo_id=self._model_id,
            allow_patterns=patterns,
            cache_dir=str(self._cache_dir) if self._cache_dir else None,
        )
        return Path(snapshot_dir)

    def _resolve_onnx_path(self, model_dir: Path) -> Path:
        onnx_path = model_dir / self._onnx_filename
        if onnx_path.exists():
            return onnx_path
        fallback_path = model_dir / FALLBACK_ONNX_FILENAME
        if self._onnx_filename != FALLBACK_ONNX_FILENAME and fallback_path.exists():
            logger.warning(
                f"Model not found at {onnx_path}, falling back to {FALLBACK_ONNX_FILENAME}"
            )
            self._onnx_filename = FALLBACK_ONNX_FILENAME
            return fallback_path
        raise FileNotFoundError(
            f"ONNX model not found at {onnx_path}. "
            f"Check that {self._model_id} has an ONNX model at {self._onnx_filename}"
        )

    def load(self, progress: Optional[ProgressCallback] = None) -> None:
        """Download and load the tokenizer and ONNX session."""
        if self._session is not None:
            return

        _ensure_imports()
        t0 = _time.perf_counter()
        logger.info(f"Loading embedding model: {self._model_id} [{self._onnx_filename}]")

        model_dir = self._download(progress)

        _report(progress, "tokenizer", "Loading tokenizer", 0.5)
        tokenizer = _tokenizers.Tokenizer.from_file(str(model_dir / "tokenizer.json"))
        tokenizer.enable_truncation(max_length=self._max_length)
        tokenizer.enable_padding(length=None)

        _report(progress, "session", "Creating inference session", 0.7)
        onnx_path = self._resolve_onnx_path(model_dir)
        sess_options = _ort.SessionOptions()
        sess_options.graph_optimization_level = (
            _ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        providers = resolve_providers(self._providers_pref)
        if providers == ["CPUExecutionProvider"]:
            sess_options.enable_cpu_mem_arena = False

        session = _ort.InferenceSession(
            str(onnx_path), sess_options=sess_options, providers=providers
        )

        outputs = session.get_outputs()
        if outputs and len(outputs[0].shape) >= 2 and isinstance(outputs[0].shape[-1], int):
            self._dim = outputs[0].shape[-1]

        self._input_names = frozenset(inp.name for inp in session.get_inputs())
        self._tokenizer = tokenizer
        self._session = session

        logger.info(
            f"Embedding model loaded: dim={self._dim}, max_tokens={self._max_length}, "
            f"providers={session.get_providers()}, "
            f"{_time.perf_counter() - t0:.1f}s"
        )

    def unload(self) -> None:
        """Release model from memory."""
        if self._session is None:
            return
        self._session = None
        self._tokenizer = None
        logger.info(f"Embedding model unloaded: {self._model_id}")

    def _tokenize(self, texts: Sequence[str]) -> dict:
        """Tokenize texts into padded int64 arrays for ONNX input."""
        encodings = self._tokenizer.encode_batch(list(texts))
        max_len = max(len(e.ids) for e in encodings)

        input_ids = np.zeros((len(texts), max_len), dtype=np.int64)
        attention_mask = np.zeros((len(texts), max_len), dtype=np.int64)
        for i, encoding in enumerate(encodings):
            length = len(encoding.ids)
            input_ids[i, :length] = encoding.ids
            attention_mask[i, :length] = encoding.attention_mask

        return {"input_ids": input_ids, "attention_mask": attention_mask}

    def _forward(self, inputs: dict) -> np.ndarray:
        """Run inference, then mean-pool and L2-normalize."""
        feed = {}
        if "input_ids" in self._input_names:
            feed["input_ids"] = inputs["input_ids"]
        if "attention_mask" in self._input_names:
            feed["attention_mask"] = inputs["attention_mask"]
        if "token_type_ids" in self._input_names:
            feed["token_type_ids"] = np.zeros_like(inputs["input_ids"])

        outputs = self._session.run(None, feed)
        pooled = mean_pool(outputs[0], inputs["attention_mask"])
        return l2_normalize(pooled)

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a unit-length float32 vector."""
        if not self.is_loaded:
            raise RuntimeError(f"Embedding model {self._model_id} is not loaded")
        embeddings = self._forward(self._tokenize([text]))
        return embeddings[0].astype(np.float32)


def _report(
    progress: Optional[ProgressCallback], stage: str, message: str, fraction: float
) -> None:
    if progress is not None:
        progress(LoadProgress(stage=stage, message=message, progress=fraction))
