import logging
import os
from typing import List, Optional, Protocol

import numpy as np
import requests
import torch
import torch.nn as nn
import torch.nn.functional as F
import torchvision
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

from app.models import Asset
from app.utils.paths import resolve_storage_path

logger = logging.getLogger(__name__)


class EmbeddingServiceError(RuntimeError):
    """Backend unreachable or returned an unusable vector. Retried by the dispatcher."""


class EmbeddingService(Protocol):
    model_name: str

    def embed_asset(self, asset: Asset) -> List[float]:
        ...


def _thumbnail_file(asset: Asset, style: str) -> str:
    path = resolve_storage_path(asset.thumbnail_path(style))
    if not path or not os.path.exists(path):
        raise EmbeddingServiceError(f"No {style} thumbnail on disk for asset {asset.id}")
    return path


class SimCLRBackbone(nn.Module):
    """ResNet-18 encoder with projection MLP head."""
    def __init__(self, hidden_dim: int = 128):
        super().__init__()
        base = torchvision.models.resnet18(weights=None)
        self.encoder = nn.Sequential(*list(base.children())[:-1])
        feat_dim = base.fc.in_features
        self.projector = nn.Sequential(
            nn.Linear(feat_dim, 4 * hidden_dim),
            nn.ReLU(inplace=True),
            nn.Linear(4 * hidden_dim, hidden_dim)
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = torch.flatten(self.encoder(x), 1)
        return F.normalize(self.projector(h), dim=1)


class SimCLREmbeddingService:
    """Embeds the rendered thumbnail of an asset with a local SimCLR model."""

    def __init__(self, weights_path: str, device: str = "cpu", hidden_dim: int = 128,
                 model_name: str = "simclr-resnet18", style: str = "medium"):
        self.device = torch.device(device)
        self.model = SimCLRBackbone(hidden_dim=hidden_dim).to(self.device)
        self.model.eval()
        self.model_name = model_name
        self.style = style
        self.transform = transforms.Compose([
            transforms.Resize((224, 224)),
            transforms.ToTensor(),
            transforms.Normalize(mean=[0.485, 0.456, 0.406],
                                 std=[0.229, 0.224, 0.225]),
        ])
        self._load_weights(weights_path)

    def _load_weights(self, path: str) -> None:
        if not path or not os.path.exists(path):
            logger.warning("[SimCLREmbeddingService] weights not found at %s; using random init", path)
            return
        logger.info("[SimCLREmbeddingService] Loading weights: %s", path)
        state = torch.load(path, map_location=self.device)
        if isinstance(state, dict) and "state_dict" in state:
            # Lightning checkpoints name the backbone "convnet" with the head under convnet.fc
            new_sd = {}
            for k, v in state["state_dict"].items():
                if k.startswith("convnet.fc."):
                    new_sd["projector." + k[len("convnet.fc."):]] = v
                elif k.startswith("convnet."):
                    new_sd["encoder." + k[len("convnet."):]] = v
                elif k.startswith("encoder.") or k.startswith("projector."):
                    new_sd[k] = v
            self.model.load_state_dict(new_sd, strict=False)
        else:
            self.model.load_state_dict(state, strict=False)

    @torch.inference_mode()
    def embed_image(self, pil_img: Image.Image) -> List[float]:
        x = self.transform(pil_img.convert("RGB")).unsqueeze(0).to(self.device)
        z = self.model(x)
        return z.cpu().numpy()[0].astype("float32").tolist()

    def embed_asset(self, asset: Asset) -> List[float]:
        path = _thumbnail_file(asset, self.style)
        try:
            with Image.open(path) as img:
                return self.embed_image(img)
        except (UnidentifiedImageError, OSError) as e:
            raise EmbeddingServiceError(f"Cannot decode thumbnail for asset {asset.id}: {e}") from e


class HttpEmbeddingService:
    """Posts the thumbnail to a remote model endpoint returning ``{"embedding": [...]}``."""

    def __init__(self, url: str, timeout: float = 20.0, model_name: str = "remote", style: str = "medium",
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.model_name = model_name
        self.style = style
        self.http = session or requests.Session()

    def embed_asset(self, asset: Asset) -> List[float]:
        path = _thumbnail_file(asset, self.style)
        try:
            with open(path, "rb") as f:
                r = self.http.post(
                    self.url,
                    files={"file": (os.path.basename(path), f, "application/octet-stream")},
                    data={"asset_id": asset.id, "model": self.model_name},
                    timeout=self.timeout,
                )
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingServiceError(f"Embedding request failed for asset {asset.id}: {e}") from e

        vec = payload.get("embedding") if isinstance(payload, dict) else payload
        if not isinstance(vec, list) or not vec:
            raise EmbeddingServiceError(f"Embedding response for asset {asset.id} has no vector")
        arr = np.asarray(vec, dtype="float64")
        if not np.all(np.isfinite(arr)):
            raise EmbeddingServiceError(f"Embedding response for asset {asset.id} is not finite")
        return arr.tolist()


def build_embedding_service(settings) -> EmbeddingService:
    if settings.EMBEDDING_BACKEND == "http":
        if not settings.EMBEDDING_HTTP_URL:
            raise RuntimeError("EMBEDDING_HTTP_URL is required for the http embedding backend")
        return HttpEmbeddingService(
            url=settings.EMBEDDING_HTTP_URL,
            timeout=settings.EMBEDDING_HTTP_TIMEOUT,
            model_name=settings.EMBEDDING_MODEL_NAME,
            style=settings.THUMBNAIL_STYLE,
        )
    if settings.EMBEDDING_BACKEND == "simclr":
        return SimCLREmbeddingService(
            weights_path=settings.SIMCLR_WEIGHTS,
            device=settings.SIMCLR_DEVICE,
            hidden_dim=settings.SIMCLR_HIDDEN_DIM,
            model_name=settings.EMBEDDING_MODEL_NAME,
            style=settings.THUMBNAIL_STYLE,
        )
    raise RuntimeError(f"Unknown EMBEDDING_BACKEND {settings.EMBEDDING_BACKEND!r}")
