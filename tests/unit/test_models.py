"""Tests for chainlab.core.models — shared data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from chainlab.core.models import (
    Artist,
    BenchmarkConfig,
    GenerationParameters,
    GenTask,
    PromptChain,
    PromptModule,
    Slot,
    resolution_mode,
)


class TestSeedConvention:
    @pytest.mark.parametrize("raw", [None, -1, -99, ""])
    def test_random_seed_values(self, raw):
        assert GenerationParameters(seed=raw).seed is None

    def test_zero_is_a_real_seed(self):
        assert GenerationParameters(seed=0).seed == 0
        assert BenchmarkConfig(seed=0).seed == 0

    def test_benchmark_negative_seed(self):
        assert BenchmarkConfig(seed=-1).seed is None


class TestGenerationParameters:
    def test_steps_capped(self):
        with pytest.raises(ValidationError):
            GenerationParameters(steps=29)

    def test_uc_preset_range(self):
        with pytest.raises(ValidationError):
            GenerationParameters(uc_preset=5)

    def test_resolution_mode(self):
        assert resolution_mode(832, 1216) == "Portrait"
        assert resolution_mode(1216, 832) == "Landscape"
        assert resolution_mode(1024, 1024) == "Square"
        assert resolution_mode(640, 640) == "Custom"


class TestWireFormat:
    def test_camel_case_input_and_output(self):
        chain = PromptChain.model_validate(
            {
                "basePrompt": "masterpiece",
                "negativePrompt": "lowres",
                "modules": [{"content": "x", "isActive": False, "position": "pre"}],
                "variableValues": {"a": "b"},
            }
        )
        assert chain.base_prompt == "masterpiece"
        assert chain.modules[0].is_active is False
        dumped = chain.model_dump(by_alias=True)
        assert dumped["basePrompt"] == "masterpiece"
        assert dumped["modules"][0]["isActive"] is False

    def test_snake_case_input_accepted(self):
        assert PromptModule(is_active=False).is_active is False

    def test_module_defaults(self):
        module = PromptModule()
        assert module.is_active is True
        assert module.position == "post"
        assert module.id


class TestGenTask:
    def test_immutable(self):
        task = GenTask(entity_id="a", slot=0)
        with pytest.raises(ValidationError):
            task.slot = 1

    def test_negative_slot_rejected(self):
        with pytest.raises(ValidationError):
            GenTask(entity_id="a", slot=-1)

    def test_unique_ids(self):
        assert GenTask(entity_id="a", slot=0).id != GenTask(entity_id="a", slot=0).id


class TestBenchmarkConfig:
    def test_add_slot_default_label(self):
        benchmark = BenchmarkConfig().add_slot().add_slot(prompt="smile")
        assert [s.label for s in benchmark.slots] == ["Slot 1", "Slot 2"]
        assert benchmark.slots[1].prompt == "smile"

    def test_remove_slot_shifts_later_slots(self):
        benchmark = BenchmarkConfig(slots=[Slot(label="A"), Slot(label="B"), Slot(label="C")])
        assert [s.label for s in benchmark.remove_slot(1).slots] == ["A", "C"]
        assert len(benchmark.slots) == 3

    def test_remove_slot_out_of_range(self):
        with pytest.raises(IndexError):
            BenchmarkConfig().remove_slot(0)


class TestArtist:
    def test_with_benchmark_pads(self):
        artist = Artist(name="A").with_benchmark(2, "img")
        assert artist.benchmarks == ["", "", "img"]

    def test_with_benchmark_does_not_mutate(self):
        artist = Artist(name="A", benchmarks=["x"])
        artist.with_benchmark(0, "y")
        assert artist.benchmarks == ["x"]
