"""
Query Enhancer: rewrites a raw customer question before retrieval.

Produces an EnhancedQuery with
- expanded: the normalized query plus vertical synonyms (keyword path)
- rewritten: the query with an intent/vertical prefix (semantic path)
- keywords: ordered, de-duplicated index terms (earlier = more important)
- categories: knowledge-base categories hinted at by the wording
- intent: coarse label used for the rewrite and for confidence

All dictionaries are stored lower-cased and without diacritics, and every
lookup runs on the normalized query, so "¿Cuánto cuesta?" and "cuanto
cuesta" enhance identically.
"""

import re
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Tuple

from .errors import InvalidConfigurationError
from .tokenizer import normalize_text, tokenize
from .types import EnhancedQuery


SUPPORTED_VERTICALS = frozenset({"general", "dental", "medical", "restaurant"})

# The re-ranker's positional decay gives zero weight from the 11th keyword on.
MAX_KEYWORDS = 10
EXPANSION_SYNONYMS_PER_TERM = 2

BASE_CONFIDENCE = 0.5
INTENT_CONFIDENCE_BONUS = 0.2
KEYWORD_CONFIDENCE_BONUS = 0.1
CATEGORY_CONFIDENCE_BONUS = 0.1

FAQ_INTENT = "faq_general"
UNKNOWN_INTENT = "unknown"

# head term -> synonyms; the first two synonyms are the ones added on expansion
SYNONYMS: Dict[str, Dict[str, List[str]]] = {
    "general": {
        "precio": ["costo", "cuanto cuesta", "cuanto sale", "valor", "tarifa", "cobran"],
        "horario": ["hora", "abierto", "cerrado", "cuando abren", "atienden"],
        "ubicacion": ["direccion", "donde estan", "como llego", "mapa"],
        "telefono": ["llamar", "numero", "cel", "whatsapp", "contacto"],
        "cita": ["agendar", "reservar", "turno", "appointment", "consulta"],
    },
    "dental": {
        "limpieza": ["profilaxis", "limpieza dental", "limpia", "higiene dental", "limpieza profunda"],
        "blanqueamiento": ["blanqueo", "aclarar dientes", "dientes blancos", "whitening", "blanqueado"],
        "ortodoncia": ["brackets", "frenos", "frenillos", "alineadores", "invisalign", "aparatos"],
        "implante": ["implantes", "implante dental", "implantes dentales", "tornillo dental"],
        "corona": ["coronas", "funda", "fundas dentales", "capas", "carilla"],
        "extraccion": ["extraer", "sacar muela", "sacar diente", "quitar muela"],
        "endodoncia": ["tratamiento de conducto", "matar nervio", "conductos", "root canal"],
        "resina": ["empaste", "relleno", "amalgama", "curar carie", "obturacion"],
        "dolor": ["duele", "molestia", "me duele", "tengo dolor", "punzada"],
        "carie": ["caries", "picadura", "hoyo", "agujero en el diente", "diente negro"],
        "sangrado": ["sangra", "sangran las encias", "encias sangrantes", "sangre"],
        "sensibilidad": ["sensible", "dientes sensibles", "me molesta el frio", "duele el frio"],
        "precio": ["costo", "cuanto cuesta", "cuanto sale", "valor", "tarifa", "cobran"],
        "cita": ["consulta", "agendar", "turno", "hora", "reservar", "appointment"],
        "urgencia": ["emergencia", "urgente", "ya", "ahora", "dolor fuerte"],
    },
    "medical": {
        "consulta": ["cita", "chequeo", "revision", "visita", "appointment"],
        "doctor": ["medico", "especialista", "dr", "dra", "profesional"],
        "analisis": ["estudios", "examenes", "laboratorio", "pruebas", "labs"],
        "receta": ["medicamentos", "medicina", "tratamiento", "prescription"],
        "precio": ["costo", "cuanto cuesta", "cuanto sale", "valor", "tarifa"],
        "seguro": ["aseguradora", "poliza", "cobertura", "insurance"],
    },
    "restaurant": {
        "menu": ["carta", "platillos", "que tienen", "que hay"],
        "comida": ["alimento", "platillo", "plato", "dish"],
        "bebida": ["drinks", "tomar", "refrescos", "jugos"],
        "postre": ["postres", "dulce", "pastel", "helado"],
        "entrada": ["entradas", "appetizer", "botana", "para empezar"],
        "pedido": ["orden", "pedir", "ordenar", "quiero", "me trae"],
        "domicilio": ["delivery", "a domicilio", "envio", "llevar a casa", "entrega"],
        "recoger": ["pickup", "para llevar", "llevar", "to go"],
        "reservacion": ["reservar", "mesa", "booking", "guardar lugar"],
        "precio": ["costo", "cuanto cuesta", "cuanto sale", "valor"],
        "promocion": ["promo", "oferta", "descuento", "2x1", "combo"],
        "vegetariano": ["vegano", "sin carne", "plant based", "verduras"],
        "picante": ["enchilado", "picoso", "chile", "spicy"],
    },
}

# Checked in order; the first family with a matching pattern wins.
INTENT_PATTERNS: List[Tuple[str, List[str]]] = [
    ("service_inquiry", [
        r"cuanto\s*(cuesta|sale|cobran|es)",
        r"precio\s*(de|del|para)",
        r"que\s*(servicios|tratamientos)",
        r"hacen\s*(limpieza|blanqueamiento|ortodoncia)",
        r"ofrecen",
        r"tienen.*servicio",
    ]),
    ("policy_inquiry", [
        r"politica\s*(de|del)",
        r"cancelar|cancelacion",
        r"reagendar|cambiar\s*cita",
        r"garantia",
        r"reembolso|devolucion",
        r"formas?\s*de\s*pago",
        r"aceptan\s*(tarjeta|efectivo)",
    ]),
    ("location_inquiry", [
        r"donde\s*(estan|queda|ubicados)",
        r"direccion",
        r"como\s*llego",
        r"ubicacion",
        r"sucursal",
        r"mapa|google\s*maps",
    ]),
    ("booking_inquiry", [
        r"agendar|reservar|apartar",
        r"cita|turno|consulta",
        r"disponibilidad|disponible",
        r"horarios?\s*(disponibles?|libres?)",
        r"cuando\s*pueden",
        r"proxima\s*cita",
    ]),
    ("menu_inquiry", [
        r"menu|carta",
        r"que\s*(platillos|tienen|hay)",
        r"comida|bebida",
        r"plato\s*(del\s*dia|fuerte)",
        r"postres?|entradas?",
    ]),
    ("order_inquiry", [
        r"pedir|ordenar|quiero",
        r"pedido|orden",
        r"domicilio|delivery",
        r"para\s*llevar|pickup",
        r"cuanto\s*tarda",
        r"tiempo\s*de\s*entrega",
    ]),
    ("loyalty_inquiry", [
        r"puntos?|tokens?",
        r"lealtad|loyalty",
        r"canjear|redimir",
        r"recompensas?|premios?",
        r"membresia",
        r"cuantos?\s*puntos",
    ]),
    ("complaint", [
        r"queja|quejarme",
        r"mal\s*servicio",
        r"problema|issue",
        r"molesto|enojado|frustrado",
        r"gerente|supervisor|encargado",
        r"no\s*me\s*gusto",
        r"pesimo",
    ]),
]

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "about_us": ["sobre nosotros", "quienes somos", "historia", "empresa", "negocio"],
    "differentiators": ["diferencia", "mejor que", "ventaja", "unico", "especial"],
    "certifications": ["certificacion", "certificado", "acreditacion", "diploma"],
    "technology": ["tecnologia", "equipo", "moderno", "digital", "escaner", "laser"],
    "materials": ["material", "calidad", "producto", "ingrediente", "marca"],
    "process": ["proceso", "procedimiento", "como funciona", "pasos"],
    "aftercare": ["cuidados", "despues", "recuperacion", "mantenimiento"],
    "preparation": ["preparacion", "antes", "previo", "recomendacion"],
    "promotions": ["promocion", "oferta", "descuento", "especial", "combo"],
    "testimonials": ["testimonio", "opinion", "resena", "review", "experiencia"],
}

REWRITE_PREFIXES: Dict[str, str] = {
    "service_inquiry": "información sobre servicio",
    "policy_inquiry": "política del negocio",
    "location_inquiry": "ubicación y dirección",
    "booking_inquiry": "reservar cita",
    "menu_inquiry": "menú y platillos",
    "order_inquiry": "realizar pedido",
    "loyalty_inquiry": "programa de lealtad puntos",
    "complaint": "resolver problema",
}

VERTICAL_CONTEXT: Dict[str, str] = {
    "dental": "clínica dental",
    "medical": "consultorio médico",
    "restaurant": "restaurante",
}

_COMPILED_INTENTS: List[Tuple[str, List[Pattern[str]]]] = [
    (intent, [re.compile(p) for p in patterns]) for intent, patterns in INTENT_PATTERNS
]


@lru_cache(maxsize=512)
def _phrase_pattern(phrase: str) -> Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)")


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word phrase match on already-normalized text."""
    return _phrase_pattern(phrase).search(text) is not None


def _validate_vertical(vertical: str) -> str:
    if vertical not in SUPPORTED_VERTICALS:
        raise InvalidConfigurationError(
            f"Unsupported vertical {vertical!r}; expected one of {sorted(SUPPORTED_VERTICALS)}"
        )
    return vertical


class QueryEnhancer:
    """
    Rule-based query enhancement for Spanish-speaking small-business customers.

    Example:
        >>> enhancer = QueryEnhancer()
        >>> result = enhancer.enhance("¿Cuánto cuesta?")
        >>> result.intent, result.expanded, result.keywords
        ('service_inquiry', 'cuanto cuesta precio', ['cuesta'])
    """

    def __init__(
        self,
        vertical: str = "general",
        business_name: Optional[str] = None,
        enable_synonym_expansion: bool = True,
        enable_intent_detection: bool = True,
    ) -> None:
        self._vertical = _validate_vertical(vertical)
        self._business_name = business_name
        self._enable_synonym_expansion = enable_synonym_expansion
        self._enable_intent_detection = enable_intent_detection

    @property
    def vertical(self) -> str:
        return self._vertical

    def enhance(
        self,
        query: str,
        vertical: Optional[str] = None,
        business_name: Optional[str] = None,
    ) -> EnhancedQuery:
        """
        Enhance a raw query.

        Args:
            query: Text exactly as the customer wrote it
            vertical: Per-call override of the configured vertical
            business_name: Per-call override of the configured business name

        Returns:
            EnhancedQuery; ``original`` keeps the raw input
        """
        vertical = _validate_vertical(vertical) if vertical else self._vertical
        business_name = business_name or self._business_name
        normalized = normalize_text(query)

        intent = self.detect_intent(normalized) if self._enable_intent_detection else UNKNOWN_INTENT
        keywords = self.extract_keywords(normalized)
        categories = self.detect_categories(normalized)
        expanded = (
            self.expand_with_synonyms(normalized, vertical)
            if self._enable_synonym_expansion
            else normalized
        )
        rewritten = self.rewrite(normalized, intent, vertical, business_name)

        return EnhancedQuery(
            original=query,
            expanded=expanded,
            rewritten=rewritten,
            keywords=keywords,
            categories=categories,
            intent=intent,
            confidence=self.calculate_confidence(intent, keywords, categories),
        )

    @staticmethod
    def detect_intent(normalized_query: str) -> str:
        for intent, patterns in _COMPILED_INTENTS:
            if any(p.search(normalized_query) for p in patterns):
                return intent
        return FAQ_INTENT

    @staticmethod
    def extract_keywords(normalized_query: str) -> List[str]:
        return list(dict.fromkeys(tokenize(normalized_query)))[:MAX_KEYWORDS]

    @staticmethod
    def detect_categories(normalized_query: str) -> List[str]:
        return [
            category
            for category, cues in CATEGORY_KEYWORDS.items()
            if any(contains_phrase(normalized_query, cue) for cue in cues)
        ]

    @staticmethod
    def expand_with_synonyms(normalized_query: str, vertical: str) -> str:
        """
        Append related terms to the query.

        A synonym present in the query adds its head term (unless the head term
        is already there); a head term present adds its first synonyms.
        Vertical dictionaries override the general one per head term.
        """
        dictionary = {**SYNONYMS["general"], **SYNONYMS.get(vertical, {})}
        additions: List[str] = []
        for term, synonyms in dictionary.items():
            has_term = contains_phrase(normalized_query, term)
            if not has_term and any(contains_phrase(normalized_query, s) for s in synonyms):
                additions.append(term)
            if has_term:
                additions.extend(synonyms[:EXPANSION_SYNONYMS_PER_TERM])
        return " ".join([normalized_query, *additions]).strip()

    @staticmethod
    def rewrite(
        normalized_query: str,
        intent: str,
        vertical: str,
        business_name: Optional[str] = None,
    ) -> str:
        prefix = REWRITE_PREFIXES.get(intent)
        if prefix is None:
            prefix = VERTICAL_CONTEXT.get(vertical)
        rewritten = f"{prefix}: {normalized_query}" if prefix else normalized_query
        if business_name:
            rewritten = f"{business_name} - {rewritten}"
        return rewritten

    @staticmethod
    def calculate_confidence(intent: str, keywords: List[str], categories: List[str]) -> float:
        confidence = BASE_CONFIDENCE
        if intent not in (UNKNOWN_INTENT, FAQ_INTENT):
            confidence += INTENT_CONFIDENCE_BONUS
        if len(keywords) >= 2:
            confidence += KEYWORD_CONFIDENCE_BONUS
        if categories:
            confidence += CATEGORY_CONFIDENCE_BONUS
        return round(min(confidence, 1.0), 2)
