import logging
import threading
from abc import ABC, abstractmethod

import numpy as np
import torch
from PIL import Image

from errors import EmbedFailure, NotInitialized
from vectors import average_embedding

logger = logging.getLogger(__name__)


def get_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


class EmbeddingModel(ABC):
    """Base interface for all embedding models."""

    name: str
    embedding_dim: int

    @abstractmethod
    def load(self, device: torch.device) -> None:
        """Load model weights onto device."""

    @abstractmethod
    def close(self) -> None:
        """Release model weights."""

    @abstractmethod
    def encode_images(self, images: list[Image.Image]) -> np.ndarray:
        """Encode images to normalized embedding vectors. Returns (N, D) float32."""

    @abstractmethod
    def encode_texts(self, texts: list[str]) -> np.ndarray:
        """Encode texts to normalized embedding vectors. Returns (N, D) float32."""

    def encode_text(self, text: str) -> np.ndarray:
        """Encode a single text. Returns (D,) float32."""
        return self.encode_texts([text])[0]

    @property
    def loaded(self) -> bool:
        return False


class OpenCLIPModel(EmbeddingModel):
    """CLIP and SigLIP models via the open_clip library."""

    def __init__(self, name: str, model_name: str, pretrained: str, embedding_dim: int):
        self.name = name
        self.embedding_dim = embedding_dim
        self._model_name = model_name
        self._pretrained = pretrained
        self._model = None
        self._preprocess = None
        self._tokenizer = None
        self._device = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self, device: torch.device) -> None:
        import open_clip

        self._device = device
        logger.info("Loading %s (%s) on %s", self.name, self._model_name, device)
        self._model, _, self._preprocess = open_clip.create_model_and_transforms(
            self._model_name, pretrained=self._pretrained or None
        )
        self._tokenizer = open_clip.get_tokenizer(self._model_name)
        self._model = self._model.to(device)
        self._model.eval()
        logger.info("Loaded %s", self.name)

    def close(self) -> None:
        self._model = None
        self._preprocess = None
        self._tokenizer = None
        if self._device is not None and self._device.type == "cuda":
            torch.cuda.empty_cache()
        logger.info("Closed %s", self.name)

    def _require_loaded(self) -> None:
        if self._model is None:
            raise NotInitialized(f"{self.name} is not loaded")

    def encode_images(self, images: list[Image.Image]) -> np.ndarray:
        self._require_loaded()
        tensors = torch.stack([self._preprocess(img) for img in images]).to(self._device)
        with torch.no_grad():
            features = self._model.encode_image(tensors)
            features /= features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy().astype(np.float32)

    def encode_texts(self, texts: list[str]) -> np.ndarray:
        self._require_loaded()
        tokens = self._tokenizer(texts).to(self._device)
        with torch.no_grad():
            features = self._model.encode_text(tokens)
            features /= features.norm(dim=-1, keepdim=True)
        return features.cpu().numpy().astype(np.float32)


class Embedder:
    """Turns decoded media into one embedding vector.

    Owns a single EmbeddingModel and serialises inference on it, so one
    instance can be shared by every worker thread of a run. Must be
    initialized before the first call and closed afterwards:

        embedder = Embedder(AVAILABLE_MODELS["clip-vit-b-32"])
        embedder.initialize()
        try:
            vec = embedder.embed(image)
        finally:
            embedder.close()
    """

    def __init__(self, model: EmbeddingModel, device: torch.device | None = None):
        self._model = model
        self._device = device
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._model.name

    @property
    def dimension(self) -> int:
        return self._model.embedding_dim

    @property
    def initialized(self) -> bool:
        return self._model.loaded

    def initialize(self) -> None:
        if self._model.loaded:
            return
        self._model.load(self._device or get_device())

    def close(self) -> None:
        with self._lock:
            if self._model.loaded:
                self._model.close()

    def _run(self, fn, arg) -> np.ndarray:
        if not self._model.loaded:
            raise NotInitialized(f"Embedder {self.name} used before initialize()")
        try:
            with self._lock:
                return fn(arg)
        except EmbedFailure:
            raise
        except Exception as exc:
            raise EmbedFailure(f"{self.name} inference failed: {exc}") from exc

    def embed(self, image: Image.Image) -> np.ndarray:
        return self._run(self._model.encode_images, [image])[0]

    def embed_frames(self, frames: list[Image.Image]) -> np.ndarray:
        """Embed each frame and reduce to one normalized mean vector."""
        if not frames:
            raise EmbedFailure("No frames to embed")
        vectors = []
        for i, frame in enumerate(frames):
            try:
                vectors.append(self.embed(frame))
            except NotInitialized:
                raise
            except EmbedFailure:
                logger.warning("Failed to embed frame %d", i, exc_info=True)
        if not vectors:
            raise EmbedFailure("No embeddings could be generated from the provided frames")
        return average_embedding(vectors)

    def embed_text(self, text: str) -> np.ndarray:
        return self._run(self._model.encode_texts, [text])[0]

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        return self._run(self._model.encode_texts, texts)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

AVAILABLE_MODELS: dict[str, EmbeddingModel] = {}


def _register_defaults() -> None:
    defaults = [
        OpenCLIPModel("clip-vit-b-32", "ViT-B-32", "openai", 512),
        OpenCLIPModel("clip-vit-b-16", "ViT-B-16", "openai", 512),
        OpenCLIPModel("clip-vit-l-14", "ViT-L-14", "openai", 768),
        OpenCLIPModel("siglip-vit-b-16", "ViT-B-16-SigLIP", "webli", 768),
    ]
    for m in defaults:
        AVAILABLE_MODELS[m.name] = m


_register_defaults()
