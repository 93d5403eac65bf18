"""Shared fixtures for the digirain tests."""

from __future__ import annotations

import io

import numpy as np
import pytest

from digirain import DigitalRain, RainConfig
from digirain_term import Terminal


@pytest.fixture
def config() -> RainConfig:
    return RainConfig(seed=1234)


@pytest.fixture
def still_config() -> RainConfig:
    """Nothing random ever happens: no flicker, glow, dim, decay or spawns."""
    return RainConfig(
        symbol_change_prob=0.0,
        glow_prob=0.0,
        dim_prob=0.0,
        decay_prob=0.0,
        spawn_prob=0.0,
        seed=7,
    )


def make_rain(config: RainConfig, width: int = 10, height: int = 10) -> DigitalRain:
    return DigitalRain(config, width, height, seed_seq=np.random.SeedSequence(99))


@pytest.fixture
def fake_terminal() -> Terminal:
    return Terminal(out=io.StringIO(), inp=io.StringIO(""), raw=False, size=(40, 12))
