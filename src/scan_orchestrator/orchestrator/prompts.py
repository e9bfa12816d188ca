"""Prompt templates for probes, evaluation and follow-up turns."""

from __future__ import annotations

from scan_orchestrator.orchestrator.models import QueryType

MAX_FOLLOW_UP_DEPTH = 3

PROBE_SYSTEM_PROMPT = """\
You are an AI assistant helping to analyze how other AI systems discuss and recommend \
brands and products.
Your task is to provide natural, informative responses as if you were a helpful AI \
assistant being asked about products or services.
Be honest and balanced in your assessments. Include specific details when relevant.

IMPORTANT: Keep your response concise (2-4 paragraphs maximum). Focus on the most \
important information and always complete your thoughts."""

_LANGUAGE_NAMES: dict[str, str] = {
    "cs": "Czech (Čeština)",
    "de": "German (Deutsch)",
    "fr": "French (Français)",
    "es": "Spanish (Español)",
    "pl": "Polish (Polski)",
    "sk": "Slovak (Slovenčina)",
    "it": "Italian (Italiano)",
    "pt": "Portuguese (Português)",
}

EVALUATION_SYSTEM_PROMPT = """\
You are an expert evaluator for GEO (Generative Engine Optimization).
Your task is to analyze AI responses and evaluate how well they mention and recommend \
specific brands.
Always respond with valid JSON only, no explanations or markdown."""

EVALUATION_PROMPT = """\
Analyze the following AI response and evaluate how well it mentions and recommends the brand.

Brand names: {brand_names}
Domain: {domain}

AI Response to analyze:
\"\"\"
{content}
\"\"\"

Evaluate the response on these metrics (return scores 0-100):

1. visibility_score (0-100): combined brand + domain presence.
   Brand mentioned = 50 points, domain mentioned = 50 points.
2. sentiment_score (0-100 or null): sentiment toward the brand, judged ONLY from
   sentences that mention the brand or domain. Return null when visibility_score is 0.
   10 = very negative, 50 = neutral, 90 = very positive.
3. ranking_score (0-100): position in a list. 100 = first, 80 = second, 60 = third,
   40 = fourth or lower, 0 = not in a list or not mentioned.
4. recommendation_score (0-100): how strongly the brand is recommended overall.
   Return 0 when the brand is not mentioned.

Return ONLY a JSON object with this exact structure:
{{
  "visibility_score": <number>,
  "sentiment_score": <number or null>,
  "ranking_score": <number>,
  "recommendation_score": <number>
}}"""

FOLLOW_UP_TEMPLATES: dict[QueryType, dict[int, dict[str, str]]] = {
    QueryType.INFORMATIONAL: {
        1: {
            "en": "Can you elaborate more on your top recommendations?",
            "cs": "Můžeš více rozvést svá hlavní doporučení?",
        },
        2: {
            "en": "What specific features or qualities should I look for?",
            "cs": "Na jaké konkrétní vlastnosti nebo kvality bych se měl zaměřit?",
        },
        3: {
            "en": "Are there any other alternatives I should consider?",
            "cs": "Jsou nějaké další alternativy, které bych měl zvážit?",
        },
    },
    QueryType.TRANSACTIONAL: {
        1: {
            "en": "Which option would you specifically recommend to buy and why?",
            "cs": "Kterou možnost bys konkrétně doporučil ke koupi a proč?",
        },
        2: {
            "en": "What should I consider before making a purchase?",
            "cs": "Co bych měl zvážit před nákupem?",
        },
        3: {
            "en": "Can you compare the top options in terms of value for money?",
            "cs": "Můžeš porovnat top možnosti z hlediska hodnoty za peníze?",
        },
    },
    QueryType.COMPARISON: {
        1: {
            "en": "Can you rank these options and explain your reasoning?",
            "cs": "Můžeš seřadit tyto možnosti a vysvětlit své pořadí?",
        },
        2: {
            "en": "What are the key differences between the top options?",
            "cs": "Jaké jsou hlavní rozdíly mezi top možnostmi?",
        },
        3: {
            "en": "Which one has the best reputation and why?",
            "cs": "Která z nich má nejlepší reputaci a proč?",
        },
    },
}

_FALLBACK_FOLLOW_UP = {
    "en": "Can you tell me more?",
    "cs": "Můžeš mi říct více?",
}


def probe_system_prompt(language: str | None = None) -> str:
    """System prompt for probe calls, with a response-language instruction."""

    normalized = (language or "en").strip().lower()
    if not normalized or normalized.startswith("en"):
        return PROBE_SYSTEM_PROMPT
    language_name = _LANGUAGE_NAMES.get(normalized[:2], normalized)
    return (
        f"{PROBE_SYSTEM_PROMPT}\n\n"
        f"IMPORTANT: You MUST respond in {language_name}. "
        f"All your answers should be written in {language_name}."
    )


def build_evaluation_prompt(content: str, brand_names: list[str], domain: str) -> str:
    return EVALUATION_PROMPT.format(
        brand_names=", ".join(brand_names),
        domain=domain,
        content=content,
    )


def follow_up_question(query_type: QueryType | str, level: int, language: str = "en") -> str:
    """Follow-up question for a level (1-based); never names the brand."""

    lang = _template_language(language)
    try:
        normalized_type = QueryType(query_type)
    except ValueError:
        return _FALLBACK_FOLLOW_UP[lang]
    template = FOLLOW_UP_TEMPLATES[normalized_type].get(level)
    if template is None:
        return _FALLBACK_FOLLOW_UP[lang]
    return template[lang]


def follow_up_questions(query_type: QueryType | str, depth: int, language: str = "en") -> list[str]:
    return [
        follow_up_question(query_type, level, language)
        for level in range(1, effective_follow_up_depth(depth) + 1)
    ]


def effective_follow_up_depth(depth: int) -> int:
    return max(0, min(depth, MAX_FOLLOW_UP_DEPTH))


def _template_language(language: str | None) -> str:
    return "cs" if (language or "").strip().lower().startswith("cs") else "en"
