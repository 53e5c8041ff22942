"""
French address vocabulary and normalization helpers.

Shared by the signal extractor, the address candidate generator and the
geocoder so that street-type keywords, postal codes and city names are
recognised the same way everywhere.
"""

import re
import unicodedata
from typing import List, Optional

# Street-type keywords used on French street plates
STREET_TYPES = [
    'rue', 'avenue', 'boulevard', 'place', 'chemin', 'impasse', 'allée', 'allee',
    'route', 'passage', 'voie', 'cours', 'quai', 'esplanade', 'promenade',
    'square', 'sentier', 'ruelle', 'rond-point', 'faubourg',
]

STREET_ABBREVIATIONS = {
    'av': 'avenue', 'av.': 'avenue', 'ave': 'avenue',
    'bd': 'boulevard', 'bd.': 'boulevard', 'blvd': 'boulevard',
    'pl': 'place', 'pl.': 'place',
    'ch': 'chemin', 'ch.': 'chemin',
    'imp': 'impasse', 'imp.': 'impasse',
    'rte': 'route', 'all': 'allée',
    'fbg': 'faubourg', 'sq': 'square',
}

STREET_TYPE_PATTERN = '|'.join(
    sorted((re.escape(t) for t in STREET_TYPES), key=len, reverse=True)
)

POSTAL_CODE_RE = re.compile(r'\b(\d{5})\b')

UPPER = "A-ZÀÂÄÇÉÈÊËÎÏÔÖÙÛÜŸ"
LOWER = "a-zàâäçéèêëîïôöùûüÿœæ"

# Capitalized word(s) joined by hyphen, apostrophe or space: "Saint-Malo", "La Rochelle"
CITY_RE = re.compile(rf"\b[{UPPER}][{LOWER}]+(?:[-' ][{UPPER}][{LOWER}]+)*\b")

# Words that look like a city name in OCR text but are not one
CITY_STOPWORDS = {
    *(t.lower() for t in STREET_TYPES),
    'france', 'french', 'code', 'postal', 'numero', 'numéro',
    'le', 'la', 'les', 'de', 'du', 'des', 'et', 'ou', 'sur', 'sous', 'dans', 'pour', 'avec', 'sans',
    'mairie', 'ville', 'commune', 'département', 'departement', 'région', 'region',
    'vente', 'vendre', 'louer', 'location', 'agence', 'immobilier', 'maison', 'appartement',
    'villa', 'terrain', 'propriété', 'propriete', 'bienvenue', 'entrée', 'entree', 'sortie',
    'interdit', 'privé', 'prive', 'parking', 'attention', 'stop',
}
ARTICLES = {"le", "la", "les"}


def strip_accents(text: str) -> str:
    """'Allée Évariste' -> 'Allee Evariste'"""
    normalized = unicodedata.normalize('NFKD', text)
    return ''.join(c for c in normalized if not unicodedata.combining(c))


def fold(text: Optional[str]) -> str:
    """Lowercase, accent-free, whitespace-collapsed form used for comparisons."""
    if not text:
        return ''
    return re.sub(r'\s+', ' ', strip_accents(text).lower()).strip()


_FOLDED_STREET_TYPES = frozenset(fold(t) for t in STREET_TYPES)


def normalize_address(address: str) -> str:
    """Expand street-type abbreviations and tidy whitespace and commas."""
    if not address:
        return ''
    tokens = []
    for token in address.split():
        expanded = STREET_ABBREVIATIONS.get(token.lower())
        if expanded:
            token = expanded.capitalize() if token[:1].isupper() else expanded
        tokens.append(token)
    result = ' '.join(tokens)
    result = re.sub(r'\s*,\s*', ', ', result)
    return result.strip(' ,')


def find_postal_code(text: str) -> Optional[str]:
    match = POSTAL_CODE_RE.search(text or '')
    return match.group(1) if match else None


def has_street_type(text: str) -> bool:
    return re.search(rf'\b(?:{STREET_TYPE_PATTERN})\b', text or '', re.IGNORECASE) is not None


def has_capitalized_city(text: str) -> bool:
    """True if ``text`` contains a capitalized name that is not a street type or stopword."""
    return bool(detect_cities(text))


def detect_cities(text: str) -> List[str]:
    """
    Capitalized names in ``text`` that could be a city, in order of appearance.

    Names following a street-type keyword in the same line or comma-separated
    segment are street names, not cities.
    """
    text = text or ''
    cities = []
    seen = set()
    for match in CITY_RE.finditer(text):
        name = match.group(0)
        words = re.split(r"[-' ]", name)
        if all(w.lower() in CITY_STOPWORDS for w in words):
            continue
        if fold(words[0]) in _FOLDED_STREET_TYPES:
            continue
        # "Ville Bordeaux" -> "Bordeaux", but "La Rochelle" keeps its article
        while words and words[0].lower() in CITY_STOPWORDS and words[0].lower() not in ARTICLES:
            name = name[len(words[0]):].lstrip("-' ")
            words = words[1:]
        if len(name) < 3:
            continue
        segment = re.split(r'[,\n;]', text[:match.start()])[-1]
        if has_street_type(segment):
            continue
        key = fold(name)
        if key not in seen:
            seen.add(key)
            cities.append(name)
    return cities


def same_city(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and fold(a) == fold(b)
