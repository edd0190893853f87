"""
Generation job value types.

A Job carries one generation request (prompt, opaque JSON configuration,
optional canvas/mask/hint images), its lifecycle status and its results.
The canonical copy of every Job lives in the JobQueue (invokers/job_queue.py);
everything handed out from there is a snapshot.
"""

from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

MAX_RETRIES = 3


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _b64(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def _unb64(text: Optional[str]) -> Optional[bytes]:
    if text is None:
        return None
    return base64.b64decode(text)


@dataclass
class JobProgress:
    current_step: int = 0
    total_steps: int = 0
    stage: Optional[str] = None
    preview_image: Optional[bytes] = None  # PNG, already decoded from the preview tensor

    @property
    def fraction(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps

    @property
    def percentage(self) -> int:
        return int(self.fraction * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "stage": self.stage,
            "preview_image": _b64(self.preview_image),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "JobProgress":
        return cls(
            current_step=int(d.get("current_step", 0)),
            total_steps=int(d.get("total_steps", 0)),
            stage=d.get("stage"),
            preview_image=_unb64(d.get("preview_image")),
        )


class HintType(str, Enum):
    """Hint types understood by the generation server."""
    SHUFFLE = "shuffle"  # moodboard / reference images
    DEPTH = "depth"
    POSE = "pose"
    CANNY = "canny"
    SCRIBBLE = "scribble"
    COLOR = "color"
    LINEART = "lineart"
    SOFTEDGE = "softedge"
    SEG = "seg"
    INPAINT = "inpaint"
    IP2P = "ip2p"
    MLSD = "mlsd"
    TILE = "tile"
    BLUR = "blur"
    LOWQUALITY = "lowquality"
    GRAY = "gray"
    CUSTOM = "custom"


@dataclass
class HintData:
    """Auxiliary guidance image (depth map, pose, moodboard...)."""
    type: str
    image_data: bytes
    weight: float = 1.0

    def __post_init__(self):
        if isinstance(self.type, HintType):
            self.type = self.type.value

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "image_data": _b64(self.image_data), "weight": self.weight}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HintData":
        return cls(
            type=str(d["type"]),
            image_data=_unb64(d["image_data"]) or b"",
            weight=float(d.get("weight", 1.0)),
        )


class HintBuilder:
    """
    Fluent collector of HintData for a Job.

    Moodboard images are numbered by the server in the order they are added,
    after the canvas ("image 2", "image 3", ...):

        hints = (
            HintBuilder()
            .add_moodboard_image(dress_png)
            .add_moodboard_image(style_png, weight=0.8)
            .build()
        )
        job = Job(prompt="person wearing the dress from image 2", canvas_image=person_png, hints=hints)
    """

    def __init__(self):
        self._hints: List[HintData] = []

    def add_hint(self, type: Union[HintType, str], image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        self._hints.append(HintData(type=type, image_data=image_data, weight=weight))
        return self

    def add_moodboard_image(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.SHUFFLE, image_data, weight)

    def add_moodboard_images(
        self,
        images: Iterable[Union[bytes, Tuple[bytes, float]]],
        weight: float = 1.0,
    ) -> "HintBuilder":
        """Add several moodboard images; items may be raw bytes or (bytes, weight) pairs."""
        for item in images:
            if isinstance(item, tuple):
                data, item_weight = item
                self.add_hint(HintType.SHUFFLE, data, item_weight)
            else:
                self.add_hint(HintType.SHUFFLE, item, weight)
        return self

    def add_depth_map(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.DEPTH, image_data, weight)

    def add_pose(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.POSE, image_data, weight)

    def add_canny_edges(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.CANNY, image_data, weight)

    def add_scribble(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.SCRIBBLE, image_data, weight)

    def add_color_reference(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.COLOR, image_data, weight)

    def add_line_art(self, image_data: bytes, weight: float = 1.0) -> "HintBuilder":
        return self.add_hint(HintType.LINEART, image_data, weight)

    def build(self) -> List[HintData]:
        return list(self._hints)

    def clear(self) -> "HintBuilder":
        self._hints.clear()
        return self

    def __len__(self) -> int:
        return len(self._hints)

    def __bool__(self) -> bool:
        return bool(self._hints)


def generate_name(prompt: str) -> str:
    """Short display name: first four words of the prompt, max 30 chars."""
    name = " ".join(prompt.split()[:4])
    if len(name) > 30:
        return name[:27] + "..."
    return name or "Untitled"


@dataclass
class Job:
    prompt: str
    configuration: str = "{}"
    negative_prompt: str = ""
    canvas_image: Optional[bytes] = None
    mask_image: Optional[bytes] = None
    hints: List[HintData] = field(default_factory=list)
    name: str = ""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    progress: Optional[JobProgress] = None
    result_images: List[bytes] = field(default_factory=list)
    error_message: Optional[str] = None
    retry_count: int = 0

    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.configuration, dict):
            self.configuration = json.dumps(self.configuration)
        self.status = JobStatus(self.status)
        if not self.name:
            self.name = generate_name(self.prompt)

    # --- configuration blob ---

    def config(self) -> Dict[str, Any]:
        """Parse the configuration JSON. Raises ValueError if it isn't a JSON object."""
        data = json.loads(self.configuration)
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        return data

    def set_config(self, data: Dict[str, Any]) -> None:
        self.configuration = json.dumps(data)

    @property
    def model_name(self) -> Optional[str]:
        try:
            model = self.config().get("model")
        except ValueError:
            return None
        return str(model) if model else None

    # --- status helpers ---

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING

    @property
    def is_processing(self) -> bool:
        return self.status == JobStatus.PROCESSING

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.retry_count < MAX_RETRIES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    # --- serialization ---

    def to_dict(self, include_images: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "configuration": self.configuration,
            "status": self.status.value,
            "progress": self.progress.to_dict() if self.progress else None,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result_count": len(self.result_images),
        }
        if include_images:
            d["canvas_image"] = _b64(self.canvas_image)
            d["mask_image"] = _b64(self.mask_image)
            d["hints"] = [h.to_dict() for h in self.hints]
            d["result_images"] = [_b64(r) for r in self.result_images]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Job":
        progress = d.get("progress")
        return cls(
            id=str(d["id"]),
            name=d.get("name") or "",
            prompt=d.get("prompt", ""),
            negative_prompt=d.get("negative_prompt", ""),
            configuration=d.get("configuration") or "{}",
            canvas_image=_unb64(d.get("canvas_image")),
            mask_image=_unb64(d.get("mask_image")),
            hints=[HintData.from_dict(h) for h in d.get("hints") or []],
            status=JobStatus(d.get("status", JobStatus.PENDING.value)),
            progress=JobProgress.from_dict(progress) if progress else None,
            result_images=[_unb64(r) for r in d.get("result_images") or []],
            error_message=d.get("error_message"),
            retry_count=int(d.get("retry_count", 0)),
            created_at=float(d.get("created_at") or time.time()),
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
        )
