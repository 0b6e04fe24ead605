"""Pre-validation of multimodal content against model capabilities.

Requests carrying image, audio, video or file parts addressed to a model
that cannot accept them are rejected before any upstream call, so the
client always gets a plain JSON 400 instead of a failure buried in a stream.

Capabilities come from a registry loaded from YAML::

    models:
      openai/gpt-4o-mini:
        input_modalities: [text, image, file]
      meta-llama/llama-3-8b-instruct:
        input_modalities: [text]

Models missing from the registry are not pre-validated; the upstream
decides for them.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Union

import yaml

from chatproxy import classifier
from chatproxy.models import ChatRequest
from chatproxy.telemetry import logger

MAX_SUGGESTIONS = 5


class Modality(str, Enum):
    """Non-text input modalities that need model support."""

    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


_PART_TYPES: Dict[str, Modality] = {
    "image_url": Modality.IMAGE,
    "input_audio": Modality.AUDIO,
    "audio": Modality.AUDIO,
    "video_url": Modality.VIDEO,
    "video": Modality.VIDEO,
    "file": Modality.FILE,
    "document": Modality.FILE,
}

# Registry spellings that grant each modality.
_MODALITY_ALIASES: Dict[Modality, Set[str]] = {
    Modality.IMAGE: {"image"},
    Modality.AUDIO: {"audio"},
    Modality.VIDEO: {"video"},
    Modality.FILE: {"file", "document"},
}

_HEADERS: Dict[Modality, str] = {
    Modality.IMAGE: "This model doesn't support image input.",
    Modality.AUDIO: "This model doesn't support audio input.",
    Modality.VIDEO: "This model doesn't support video input.",
    Modality.FILE: "This model doesn't support file/document input.",
}

_DEFAULT_SUGGESTIONS = {
    Modality.IMAGE: ("Try a vision-capable model like:", classifier.VISION_MODELS),
    Modality.AUDIO: ("Try an audio-capable model like:", classifier.AUDIO_MODELS),
    Modality.VIDEO: ("Try a video-capable model like:", classifier.VIDEO_MODELS),
    Modality.FILE: ("Try a model with file support like:", classifier.FILE_MODELS),
}


class ModelCapabilityRegistry(Protocol):
    """Read-only lookup of the input modalities each model accepts."""

    def knows(self, model_id: str) -> bool:
        ...

    def supports(self, model_id: str, modality: Modality) -> bool:
        ...

    def models_supporting(self, modality: Modality) -> List[str]:
        ...


class StaticCapabilityRegistry:
    """Capability registry backed by an in-memory mapping."""

    def __init__(self, models: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._models: Dict[str, Set[str]] = {
            model_id: {m.lower() for m in modalities}
            for model_id, modalities in (models or {}).items()
        }

    def knows(self, model_id: str) -> bool:
        return model_id in self._models

    def supports(self, model_id: str, modality: Modality) -> bool:
        accepted = self._models.get(model_id, set())
        return bool(accepted & _MODALITY_ALIASES[modality])

    def models_supporting(self, modality: Modality) -> List[str]:
        return sorted(m for m in self._models if self.supports(m, modality))


def load_capabilities(path: Union[str, Path]) -> StaticCapabilityRegistry:
    """Load a capability registry from a YAML file.

    Args:
        path: Path to the YAML registry.

    Returns:
        A populated StaticCapabilityRegistry.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML does not have the expected shape.
    """
    registry_path = Path(path)
    if not registry_path.exists():
        raise FileNotFoundError("Capability registry not found: {}".format(path))

    with open(registry_path, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict) or not isinstance(raw.get("models", {}), dict):
        raise ValueError("Capability registry must contain a 'models' mapping")

    models: Dict[str, List[str]] = {}
    for model_id, entry in raw.get("models", {}).items():
        if isinstance(entry, dict):
            modalities = entry.get("input_modalities", [])
        else:
            modalities = entry or []
        if not isinstance(modalities, list):
            raise ValueError(
                "input_modalities for '{}' must be a list".format(model_id)
            )
        models[str(model_id)] = [str(m) for m in modalities]

    return StaticCapabilityRegistry(models)


@dataclass
class CapabilityViolation:
    """A content modality the target model cannot accept."""

    modality: Modality
    model_id: str
    message: str


def detect_modalities(request: ChatRequest) -> Set[Modality]:
    """Return every non-text modality present in the request's messages."""
    found: Set[Modality] = set()
    for message in request.messages:
        if not isinstance(message.content, list):
            continue
        for part in message.content:
            if not isinstance(part, dict):
                continue
            modality = _PART_TYPES.get(str(part.get("type", "")))
            if modality is not None:
                found.add(modality)
    return found


def _violation_message(
    modality: Modality, registry: ModelCapabilityRegistry
) -> str:
    capable = registry.models_supporting(modality)[:MAX_SUGGESTIONS]
    if capable:
        suggestions = classifier.format_suggestions(
            "Try one of these models that supports it:", capable
        )
    else:
        header, models = _DEFAULT_SUGGESTIONS[modality]
        suggestions = classifier.format_suggestions(header, models)
    return "{}\n{}\n\nCheck model capabilities: {}".format(
        _HEADERS[modality], suggestions, classifier.MODELS_PAGE
    )


def validate_capabilities(
    request: ChatRequest,
    registry: ModelCapabilityRegistry,
    request_id: str = "-",
) -> Optional[CapabilityViolation]:
    """Check every content part against the target model's capabilities.

    Args:
        request: The parsed chat request.
        registry: Capability lookup.
        request_id: Correlation id for log lines.

    Returns:
        None when the request may proceed, otherwise the first violation.
    """
    detected = detect_modalities(request)
    if not detected:
        return None

    logger.info(
        "[%s] Detected multimodal content: %s",
        request_id,
        ", ".join(sorted(m.value for m in detected)),
    )

    if not registry.knows(request.model):
        logger.debug(
            "[%s] Model '%s' not in capability registry, skipping pre-validation",
            request_id,
            request.model,
        )
        return None

    for modality in sorted(detected, key=lambda m: m.value):
        if not registry.supports(request.model, modality):
            logger.warning(
                "[%s] Model '%s' doesn't support %s input",
                request_id,
                request.model,
                modality.value,
            )
            return CapabilityViolation(
                modality=modality,
                model_id=request.model,
                message=_violation_message(modality, registry),
            )
    return None
