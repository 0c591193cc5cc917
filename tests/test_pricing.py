"""Tests for the pricing table."""

import json

import pytest
from pydantic import ValidationError

from trace_assembly import config
from trace_assembly.models import PricingEntry
from trace_assembly.pricing import (
    ModelAlias,
    PricingTable,
    builtin_pricing_table,
    default_pricing_table,
)


class TestLookup:
    """Tests for PricingTable.lookup."""

    def test_rates_converted_to_per_token(self, pricing):
        entry = pricing.lookup("openai", "gpt-4")

        assert entry.input_rate == pytest.approx(0.00003)
        assert entry.output_rate == pytest.approx(0.00006)

    def test_case_insensitive(self, pricing):
        assert pricing.lookup("OpenAI", "GPT-4") == pricing.lookup("openai", "gpt-4")

    def test_unknown_pair_returns_none(self, pricing):
        assert pricing.lookup("acme", "model-x") is None

    @pytest.mark.parametrize("vendor,model", [(None, "gpt-4"), ("openai", None), ("", "")])
    def test_missing_vendor_or_model(self, pricing, vendor, model):
        assert pricing.lookup(vendor, model) is None

    def test_contains(self, pricing):
        assert ("OPENAI", "gpt-4") in pricing
        assert ("acme", "x") not in pricing
        assert "openai" not in pricing


class TestAliases:
    """Tests for pattern based model aliases."""

    def test_alias_matches_model_family(self):
        table = PricingTable(
            {("openai", "gpt-4"): PricingEntry(input_rate=1, output_rate=2)},
            aliases=[ModelAlias(vendor="openai", pattern="gpt-4", model="gpt-4")],
        )

        assert table.lookup("openai", "gpt-4-0613").input_rate == 1

    def test_exact_entry_wins_over_alias(self):
        table = builtin_pricing_table()

        preview = table.lookup("openai", "gpt-4-1106-preview")

        assert preview.input_rate == pytest.approx(0.01 / 1000)

    def test_alias_is_vendor_scoped(self):
        table = builtin_pricing_table()

        assert table.lookup("azure", "gpt-4-turbo") is None

    def test_anthropic_family(self):
        table = builtin_pricing_table()

        entry = table.lookup("anthropic", "claude-3-opus-20240229")

        assert entry == table.lookup("anthropic", "claude-3-opus")


class TestLoading:
    """Tests for building tables from documents and files."""

    def test_from_dict_per_token_unit(self):
        table = PricingTable.from_dict({
            "unit": "token",
            "vendors": {"acme": {"model-x": {"input": 0.5, "output": 1.5}}},
        })

        assert table.lookup("acme", "model-x").output_rate == 1.5

    def test_from_dict_rejects_negative_rate(self):
        with pytest.raises(ValidationError):
            PricingTable.from_dict({"vendors": {"acme": {"m": {"input": -1, "output": 0}}}})

    def test_from_dict_rejects_unknown_unit(self):
        with pytest.raises(ValidationError):
            PricingTable.from_dict({"unit": "1m", "vendors": {}})

    def test_from_file(self, tmp_path):
        path = tmp_path / "pricing.json"
        path.write_text(json.dumps({
            "vendors": {"acme": {"model-x": {"input": 1, "output": 2}}},
            "aliases": [{"vendor": "acme", "pattern": "model-x", "model": "model-x"}],
        }))

        table = PricingTable.from_file(str(path))

        assert len(table) == 1
        assert table.lookup("acme", "model-x-large").input_rate == pytest.approx(0.001)

    def test_default_table_reads_configured_file(self, tmp_path, monkeypatch):
        path = tmp_path / "pricing.json"
        path.write_text(json.dumps({"vendors": {"acme": {"m": {"input": 1, "output": 1}}}}))
        monkeypatch.setattr(config, "PRICING_TABLE_PATH", str(path))

        table = default_pricing_table()

        assert list(table) == [("acme", "m")]

    def test_default_table_is_builtin(self, monkeypatch):
        monkeypatch.setattr(config, "PRICING_TABLE_PATH", None)

        table = default_pricing_table()

        assert ("openai", "gpt-3.5-turbo") in table
        assert ("cohere", "command-r") in table

    def test_table_is_read_only(self, pricing):
        with pytest.raises(TypeError):
            pricing._entries[("x", "y")] = PricingEntry(input_rate=0, output_rate=0)
