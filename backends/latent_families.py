"""
Latent model families and their latent -> RGB calibration tables.

Preview tensors streamed by the server are still in latent space. A fixed
linear projection per family (factors + bias) approximates the VAE decode well
enough for a progress preview. Tables are constants; swap them here if the
server's models change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np


class LatentFamily(str, Enum):
    SD15 = "sd15"
    SDXL = "sdxl"
    SD3 = "sd3"
    FLUX = "flux"

    @classmethod
    def detect(cls, name: Optional[str]) -> Optional["LatentFamily"]:
        """
        Best-effort family detection from a model file name or catalog version.
        Returns None if nothing matches.
        """
        if not name:
            return None
        s = name.lower()
        if "flux" in s:
            return cls.FLUX
        if "sd3" in s or "sd_3" in s or "sd-3" in s:
            return cls.SD3
        if "xl" in s or "pony" in s or "illustrious" in s:
            return cls.SDXL
        if "v1" in s or "sd15" in s or "sd_1" in s or "1.5" in s:
            return cls.SD15
        return None


@dataclass(frozen=True)
class Calibration:
    family: LatentFamily
    factors: np.ndarray  # (C, 3)
    bias: np.ndarray     # (3,)

    @property
    def channels(self) -> int:
        return int(self.factors.shape[0])


def _table(family: LatentFamily, rows, bias) -> Calibration:
    factors = np.asarray(rows, dtype=np.float32)
    factors.setflags(write=False)
    b = np.asarray(bias, dtype=np.float32)
    b.setflags(write=False)
    return Calibration(family=family, factors=factors, bias=b)


CALIBRATIONS: Dict[LatentFamily, Calibration] = {
    LatentFamily.SD15: _table(
        LatentFamily.SD15,
        [
            [0.3512, 0.2297, 0.3227],
            [0.3250, 0.4974, 0.2350],
            [-0.2829, 0.1762, 0.2721],
            [-0.2120, -0.2616, -0.7177],
        ],
        [0.0, 0.0, 0.0],
    ),
    LatentFamily.SDXL: _table(
        LatentFamily.SDXL,
        [
            [0.3651, 0.4232, 0.4341],
            [-0.2533, -0.0042, 0.1068],
            [0.1076, 0.1111, -0.0362],
            [-0.3165, -0.2492, -0.2188],
        ],
        [0.1084, -0.0175, -0.0011],
    ),
    LatentFamily.SD3: _table(
        LatentFamily.SD3,
        [
            [-0.0922, -0.0175, 0.0749],
            [0.0311, 0.0633, 0.0954],
            [0.1994, 0.0927, 0.0458],
            [0.0856, 0.0339, 0.0902],
            [0.0587, 0.0272, -0.0496],
            [-0.0006, 0.1104, 0.0309],
            [0.0978, 0.0306, 0.0427],
            [-0.0042, 0.1038, 0.1358],
            [-0.0194, 0.0020, 0.0669],
            [-0.0488, 0.0130, -0.0268],
            [0.0922, 0.0988, 0.0951],
            [-0.0278, 0.0524, -0.0542],
            [0.0332, 0.0456, 0.0895],
            [-0.0069, -0.0030, -0.0810],
            [-0.0596, -0.0465, -0.0293],
            [-0.1448, -0.1463, -0.1189],
        ],
        [0.2394, 0.2135, 0.1925],
    ),
    LatentFamily.FLUX: _table(
        LatentFamily.FLUX,
        [
            [-0.0346, 0.0244, 0.0681],
            [0.0034, 0.0210, 0.0687],
            [0.0275, -0.0668, -0.0433],
            [-0.0174, 0.0160, 0.0617],
            [0.0859, 0.0721, 0.0329],
            [0.0004, 0.0383, 0.0115],
            [0.0405, 0.0861, 0.0915],
            [-0.0236, -0.0185, -0.0259],
            [-0.0245, 0.0250, 0.1180],
            [0.1008, 0.0755, -0.0421],
            [-0.0515, 0.0201, 0.0011],
            [0.0428, -0.0012, -0.0036],
            [0.0817, 0.0765, 0.0749],
            [-0.1264, -0.0522, -0.1103],
            [-0.0280, -0.0881, -0.0499],
            [-0.1262, -0.0982, -0.0778],
        ],
        [-0.0329, -0.0718, -0.0851],
    ),
}

# channel count -> family assumed when the caller gives none (or a mismatched one)
DEFAULT_FAMILY: Dict[int, LatentFamily] = {
    4: LatentFamily.SDXL,
    16: LatentFamily.FLUX,
}


def calibration_for(channels: int, family: Optional[LatentFamily] = None) -> Calibration:
    """Pick the calibration table for a latent tensor with `channels` channels."""
    if family is not None:
        cal = CALIBRATIONS.get(LatentFamily(family))
        if cal is not None and cal.channels == channels:
            return cal
    default = DEFAULT_FAMILY.get(channels)
    if default is None:
        raise KeyError(f"no latent calibration for {channels} channels")
    return CALIBRATIONS[default]


def latent_channel_counts() -> Tuple[int, ...]:
    return tuple(sorted(DEFAULT_FAMILY))
