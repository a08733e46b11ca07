import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from hypothesis import given, strategies as st

from knowledge_engine.retrieval.errors import InvalidConfigurationError
from knowledge_engine.retrieval.query_enhancer import MAX_KEYWORDS, QueryEnhancer, contains_phrase


@pytest.fixture
def enhancer() -> QueryEnhancer:
    return QueryEnhancer()


class TestIntent:

    @pytest.mark.parametrize(
        "query,intent",
        [
            ("¿Cuánto cuesta la limpieza?", "service_inquiry"),
            ("¿Puedo cancelar mi cita?", "policy_inquiry"),
            ("¿Dónde están ubicados?", "location_inquiry"),
            ("Quiero agendar para el martes", "booking_inquiry"),
            ("¿Me pasas el menú?", "menu_inquiry"),
            ("Hacen delivery a mi colonia", "order_inquiry"),
            ("¿Cuántos puntos tengo?", "loyalty_inquiry"),
            ("Tengo una queja del servicio", "complaint"),
            ("¿Trabajan con niños?", "faq_general"),
        ],
    )
    def test_detect_intent(self, enhancer, query, intent):
        assert enhancer.enhance(query).intent == intent

    def test_intent_detection_disabled(self):
        result = QueryEnhancer(enable_intent_detection=False).enhance("¿Cuánto cuesta?")
        assert result.intent == "unknown"


class TestExpansion:

    def test_synonym_adds_head_term(self, enhancer):
        assert enhancer.enhance("¿Cuánto cuesta?").expanded == "cuanto cuesta precio"

    def test_head_term_adds_first_two_synonyms(self, enhancer):
        assert enhancer.enhance("precio").expanded == "precio costo cuanto cuesta"

    def test_whole_word_matching(self, enhancer):
        # "ahora" contains "hora" (a horario synonym) but is a different word
        assert enhancer.enhance("ahora mismo").expanded == "ahora mismo"

    def test_vertical_dictionary(self, enhancer):
        dental = enhancer.enhance("me pusieron brackets", vertical="dental")
        assert dental.expanded.endswith("ortodoncia")
        general = enhancer.enhance("me pusieron brackets")
        assert "ortodoncia" not in general.expanded

    def test_expansion_disabled(self):
        result = QueryEnhancer(enable_synonym_expansion=False).enhance("¿Cuánto cuesta?")
        assert result.expanded == "cuanto cuesta"


class TestKeywordsAndCategories:

    def test_keywords_are_tokenized_and_ordered(self, enhancer):
        result = enhancer.enhance("¿Cuánto cuesta la limpieza dental profunda?")
        assert result.keywords == ["cuesta", "limpieza", "dental", "profunda"]

    def test_keywords_deduplicated(self, enhancer):
        assert enhancer.enhance("precio precio PRECIO").keywords == ["precio"]

    def test_keywords_bounded(self, enhancer):
        query = " ".join(f"palabra{i}" for i in range(20))
        assert len(enhancer.enhance(query).keywords) == MAX_KEYWORDS

    def test_categories_detected(self, enhancer):
        result = enhancer.enhance("¿Qué tecnología usan y cuál es el proceso?")
        assert result.categories == ["technology", "process"]

    def test_no_categories(self, enhancer):
        assert enhancer.enhance("horario del sábado").categories == []


class TestRewrite:

    def test_intent_prefix(self, enhancer):
        assert enhancer.enhance("¿Cuánto cuesta?").rewritten == "información sobre servicio: cuanto cuesta"

    def test_vertical_context_for_general_questions(self):
        result = QueryEnhancer(vertical="dental").enhance("¿Trabajan con niños?")
        assert result.rewritten == "clínica dental: trabajan con ninos"

    def test_business_name_prefix(self):
        result = QueryEnhancer(business_name="Sonrisas").enhance("¿Cuánto cuesta?")
        assert result.rewritten == "Sonrisas - información sobre servicio: cuanto cuesta"

    def test_per_call_business_name(self, enhancer):
        result = enhancer.enhance("¿Cuánto cuesta?", business_name="La Fonda")
        assert result.rewritten.startswith("La Fonda - ")


class TestConfidence:

    def test_base_confidence(self, enhancer):
        assert enhancer.enhance("¿Trabajan con niños?").confidence == 0.6  # two keywords

    def test_all_bonuses(self, enhancer):
        result = enhancer.enhance("¿Cuánto cuesta el proceso de blanqueamiento?")
        assert result.intent == "service_inquiry"
        assert result.categories == ["process"]
        assert result.confidence == 0.9

    def test_capped(self, enhancer):
        assert enhancer.enhance("¿Cuánto cuesta el proceso con tecnología láser?").confidence <= 1.0


class TestValidation:

    def test_unknown_vertical_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            QueryEnhancer(vertical="veterinary")

    def test_unknown_vertical_per_call_rejected(self, enhancer):
        with pytest.raises(InvalidConfigurationError):
            enhancer.enhance("hola", vertical="veterinary")


def test_contains_phrase():
    assert contains_phrase("cuanto cuesta", "cuanto cuesta")
    assert not contains_phrase("cuantos", "cuanto")


@given(st.text(max_size=120))
def test_enhance_is_deterministic(query):
    enhancer = QueryEnhancer(vertical="restaurant")
    assert enhancer.enhance(query) == enhancer.enhance(query)


@given(st.text(max_size=120))
def test_original_is_preserved(query):
    assert QueryEnhancer().enhance(query).original == query
