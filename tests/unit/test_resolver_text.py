"""
Unit tests for resolver text helpers, candidate scoring and mention extraction.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from targetgraph.core.exceptions import DatabaseUnavailableError
from targetgraph.models import Constraint, ExtractedMentions, Mention
from targetgraph.resolver import (
    LexicalExtractor,
    MentionExtractorChain,
    SearchVariantExpander,
    SimilarityScorer,
    StructuredExtractor,
    extract_structured_mentions,
    split_fallback_mentions,
)
from targetgraph.resolver.mentions import prune_subsumed_single_token_mentions
from targetgraph.resolver.text import (
    base_mention_variants,
    disease_id_priority,
    infer_mention_type,
    is_generic_mechanism_mention,
    is_high_signal_drug_target_hint,
    mention_has_surface_support,
    normalize,
    symbol_hint_from_mention,
    target_symbol_hint_boost,
)


@pytest.mark.unit
class TestTextHelpers:

    def test_normalize_keeps_hyphens(self):
        assert normalize("  IL-6, Signaling! ") == "il-6 signaling"
        assert normalize("EFO_0000270") == "efo 0000270"

    @pytest.mark.parametrize("mention,expected", [
        ("IL6", ["IL6", "IL-6", "IL 6"]),
        ("il6 signaling", ["il6 signaling", "il6"]),
        ("Crohn's disease", ["Crohn's disease", "Crohns disease"]),
        ("", []),
    ])
    def test_search_variants(self, mention, expected):
        assert base_mention_variants(mention) == expected

    def test_symbol_hint(self):
        assert symbol_hint_from_mention("IL6 signaling") == "IL6"
        assert symbol_hint_from_mention("asthma") is None

    def test_disease_id_priority(self):
        ids = ["HP_0002099", "MONDO_0004979", "EFO_0000270", "OTAR_1"]
        assert sorted(ids, key=disease_id_priority, reverse=True)[0] == "EFO_0000270"
        assert disease_id_priority("OTAR_1") == 1

    @pytest.mark.parametrize("mention,expected", [
        ("inflammatory signaling", True),
        ("IL6 signaling", False),
        ("asthma", False),
    ])
    def test_generic_mechanism(self, mention, expected):
        assert is_generic_mechanism_mention(mention) is expected

    @pytest.mark.parametrize("mention,expected", [
        ("asthma", "disease"),
        ("tocilizumab therapy", "intervention"),
        ("IL6", "target"),
        ("gut microbiome", "unknown"),
    ])
    def test_infer_mention_type(self, mention, expected):
        assert infer_mention_type(mention) == expected

    def test_drug_target_hint_filter(self):
        assert is_high_signal_drug_target_hint("IL6R", "Interleukin-6 receptor")
        assert not is_high_signal_drug_target_hint("HeLa", "cell line")
        assert not is_high_signal_drug_target_hint("EGFR/ERBB2")

    def test_surface_support(self):
        assert mention_has_surface_support("between asthma and IL6", "IL-6")
        assert not mention_has_surface_support("between asthma and IL6", "obesity")

    def test_symbol_hint_boost(self):
        assert target_symbol_hint_boost("IL6", "Interleukin 6") == 0.45
        assert target_symbol_hint_boost("IL6", "Tumor necrosis factor") == -0.12
        assert target_symbol_hint_boost("asthma", "anything") == 0.0


@pytest.mark.unit
class TestSimilarityScorer:

    @pytest.fixture
    def scorer(self):
        return SimilarityScorer()

    @pytest.mark.parametrize("query,candidate,expected", [
        ("asthma", "Asthma", 1.0),
        ("asthma", "asthma exacerbation", 0.88),
        ("tnf", "tumor necrosis factor", 0.94),
        ("asthma", "obesity", 0.0),
    ])
    def test_similarity(self, scorer, query, candidate, expected):
        assert scorer.similarity(query, candidate) == expected

    def test_entity_preference(self, scorer):
        assert scorer.entity_preference("IL6", "target", "disease", "x") == -0.45
        assert scorer.entity_preference("IL6", "unknown", "target", "IL6") == 0.28
        assert scorer.entity_preference("asthma", "unknown", "disease", "IgE measurement") == -1.2
        assert scorer.entity_preference("allergic asthma", "unknown", "disease", "asthma") == 0.42
        assert scorer.entity_preference("allergic asthma", "unknown", "target", "IL4") == -0.24

    def test_cutoffs(self, scorer):
        assert scorer.candidate_cutoff("asthma", "disease") == 0.58
        assert scorer.candidate_cutoff("IL6", "target") == 0.52
        assert scorer.anchor_threshold("IL6", "unknown") == 0.56
        assert scorer.anchor_threshold("IL6", "target") == 0.5


@pytest.mark.unit
class TestMentionExtraction:

    def test_between_operands(self):
        assert extract_structured_mentions("between asthma and IL6") == ["asthma", "il6"]

    def test_causal_phrasing_drops_generic_tail(self):
        mentions = extract_structured_mentions("How does obesity lead to type 2 diabetes via inflammatory signaling")
        assert mentions == ["obesity", "type 2 diabetes"]

    def test_fallback_mentions_are_typed_and_ordered(self):
        mentions = split_fallback_mentions("between asthma and IL6")
        assert [(m.text, m.type) for m in mentions] == [("asthma", "disease"), ("il6", "target")]

    def test_empty_query(self):
        assert split_fallback_mentions("   ") == []
        assert extract_structured_mentions("") == []

    def test_prune_subsumed_single_tokens(self):
        mentions = [Mention(text="type 2 diabetes"), Mention(text="diabetes"), Mention(text="IL6")]
        kept = prune_subsumed_single_token_mentions(mentions)
        assert [m.text for m in kept] == ["type 2 diabetes", "IL6"]


@pytest.mark.unit
class TestExtractorChain:

    async def test_lexical_used_when_llm_missing(self):
        chain = MentionExtractorChain([StructuredExtractor(None), LexicalExtractor()])
        extracted = await chain.extract("between asthma and IL6")
        assert [m.text for m in extracted.mentions] == ["asthma", "il6"]
        assert extracted.rationale.startswith("Fallback extractor")

    async def test_structured_mentions_need_surface_support(self):
        llm = Mock()
        llm.available = True
        llm.small_model = "small"
        llm.complete_json = AsyncMock(return_value=ExtractedMentions(
            intent="multihop-discovery",
            mentions=[Mention(text="asthma", type="disease"), Mention(text="obesity", type="disease")],
            constraints=[Constraint(text="avoid steroids", polarity="avoid")],
            rationale="two anchors",
        ))

        extracted = await StructuredExtractor(llm).extract("between asthma and IL6")

        assert [m.text for m in extracted.mentions] == ["asthma", "il6"]
        assert extracted.mentions[0].type == "disease"
        assert extracted.constraints[0].polarity == "avoid"
        assert llm.complete_json.await_args.kwargs["model"] == "small"

    async def test_structured_failure_defers(self):
        llm = Mock()
        llm.available = True
        llm.small_model = "small"
        llm.complete_json = AsyncMock(side_effect=DatabaseUnavailableError("openai", "cooldown"))
        assert await StructuredExtractor(llm).extract("asthma") is None

    async def test_variant_expander_without_llm(self):
        variants = await SearchVariantExpander().expand("IL6", [Mention(text="IL6", type="target")])
        assert variants == {"IL6": ["IL6", "IL-6", "IL 6"]}
