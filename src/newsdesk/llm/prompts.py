from __future__ import annotations

LANG_NAMES = {
    "de": "German",
    "ua": "Ukrainian",
    "ru": "Russian",
    "en": "English",
}

GLOSSARY = {
    "en": {
        "Aufenthaltstitel": "residence permit",
        "BAMF": "BAMF (do not translate)",
        "Jobcenter": "Jobcenter (do not translate)",
        "Bürgergeld": "Bürgergeld / citizen's benefit",
        "Ausländerbehörde": "foreigners' registration office",
    },
    "ua": {
        "Aufenthaltstitel": "посвідка на проживання",
        "BAMF": "BAMF",
        "Jobcenter": "Jobcenter (центр зайнятості)",
        "Bürgergeld": "Bürgergeld (допомога громадянам)",
        "Ausländerbehörde": "відділ у справах іноземців",
    },
    "ru": {
        "Aufenthaltstitel": "вид на жительство",
        "BAMF": "BAMF",
        "Jobcenter": "Jobcenter (центр занятости)",
        "Bürgergeld": "Bürgergeld (пособие)",
        "Ausländerbehörde": "ведомство по делам иностранцев",
    },
}

STYLE_GUIDES = {
    "news": "Short paragraphs, active voice, the most important facts first.",
    "explainer": "Explain background and terms, add practical context for newcomers.",
    "brief": "Three to five sentences in total, no sections beyond the essentials.",
}

SECTION_HEADINGS = {
    "de": ("Was ist passiert?", "Warum ist das wichtig?", "Was kann man tun?"),
    "ua": ("Що сталося?", "Чому це важливо?", "Що можна зробити?"),
    "ru": ("Что произошло?", "Почему это важно?", "Что можно сделать?"),
    "en": ("What happened?", "Why does it matter?", "What can you do?"),
}

REWRITE_TEMPERATURE = 0.7
TRANSLATE_TEMPERATURE = 0.3
EXTRACT_TEMPERATURE = 0.3
SEO_TEMPERATURE = 0.5


def lang_name(lang: str) -> str:
    return LANG_NAMES.get(lang, "German")


def rewrite_system(style: str, lang: str) -> str:
    what, why, action = SECTION_HEADINGS.get(lang, SECTION_HEADINGS["de"])
    style_text = STYLE_GUIDES.get(style, style)
    return f"""You are a professional news editor for a multilingual local news service.

Your task:
1. Completely rewrite the provided article in {lang_name(lang)}
2. Create unique content, no direct quotes except very short official statements
3. Maintain factual accuracy
4. Tone: neutral, factual, easy to understand

Style guidelines:
{style_text}

Output format, exactly these tags and nothing else:
<title>Headline</title>
<lead>Two or three sentences summarising the news</lead>
<section id="what"><h2>{what}</h2><p>...</p></section>
<section id="why"><h2>{why}</h2><p>...</p></section>
<section id="action"><h2>{action}</h2><p>...</p></section>
"""


def rewrite_prompt(content: str) -> str:
    return "Rewrite this article:\n\n" + content


def glossary_text(target: str, glossary: dict[str, str] | None = None) -> str:
    terms = glossary if glossary is not None else GLOSSARY.get(target, {})
    if not terms:
        return ""
    lines = ["", "", "Glossary - use these exact translations:"]
    for term, translation in terms.items():
        lines.append(f"- {term} = {translation}")
    return "\n".join(lines)


def translate_system(source: str, target: str, glossary: dict[str, str] | None = None) -> str:
    return f"""You are a professional translator for news content.

Translate from {lang_name(source)} to {lang_name(target)}.

Guidelines:
1. Maintain the original meaning and tone
2. Keep the tag structure intact (preserve all tags)
3. Do NOT translate URLs, source names, or proper nouns that should stay original
4. Use natural, fluent {lang_name(target)}, not word-for-word translation
5. Keep numbers and dates in the same format{glossary_text(target, glossary)}

Output only the translated text, nothing else.
"""


def seo_system(lang: str) -> str:
    return f"""You are an SEO expert for a news website.

Generate SEO metadata in {lang_name(lang)} for the provided article.

Requirements:
1. SEO Title: Max 60 characters, include main keyword near beginning
2. Meta Description: Max 155 characters, include primary keyword
3. Keywords: 5-10 relevant keywords/phrases
4. Slug: URL-friendly, lowercase, hyphens instead of spaces, max 60 chars

Output as JSON:
{{
  "title": "SEO title here",
  "description": "Meta description here",
  "keywords": ["keyword1", "keyword2"],
  "slug": "url-slug-here"
}}
"""


ENTITIES_SYSTEM = """Analyze the provided news article and extract:
1. Named entities (persons, organizations, locations, dates)
2. Main topics/keywords
3. Geographic relevance
4. Category suggestion

Output as JSON:
{
  "entities": {
    "persons": ["name1", "name2"],
    "organizations": ["org1", "org2"],
    "locations": ["loc1", "loc2"],
    "dates": ["date1", "date2"]
  },
  "keywords": ["keyword1", "keyword2"],
  "geo": ["München", "Bayern"],
  "category": "politik",
  "sentiment": 0.0
}

Sentiment: -1 (very negative) to 1 (very positive), 0 is neutral
"""


ARTICLE_PAGE_SYSTEM = """You receive the HTML of a news web page. Pull out the article itself
and ignore navigation, advertising and comments.

Output ONLY JSON, no explanations:
{
  "title": "headline of the article",
  "lead": "first paragraph or lead (1-2 sentences)",
  "body": "main text of the article as HTML",
  "author": "author if given",
  "date": "publication date if given"
}
"""


def classify_system(categories: list[str]) -> str:
    return f"""Classify the provided news article into one of these categories:
{", ".join(categories)}

Output as JSON:
{{
  "category": "category_key",
  "confidence": 0.95,
  "tags": ["tag1", "tag2"]
}}
"""


def summarize_system(max_length: int, lang: str) -> str:
    return f"""Summarize the provided article in {lang_name(lang)}.

Requirements:
1. Maximum {max_length} characters
2. Capture the main point and key facts
3. Neutral tone, complete sentences
4. No meta-commentary

Output only the summary text.
"""
