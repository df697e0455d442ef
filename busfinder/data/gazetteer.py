"""
Static gazetteer of well-known Singapore places, used as the last geocoding
fallback when every remote provider comes back empty.
"""
import re
from typing import NamedTuple

MIN_PARTIAL_QUERY_LEN = 3


class Place(NamedTuple):
    name: str
    lat: float
    lng: float


# Keys are lower-case; order matters for substring matches (first hit wins).
SINGAPORE_PLACES: dict[str, tuple[float, float]] = {
    "orchard": (1.3040, 103.8318),
    "orchard road": (1.3048, 103.8318),
    "ion orchard": (1.3040, 103.8318),
    "dhoby ghaut": (1.2990, 103.8456),
    "city hall": (1.2931, 103.8520),
    "raffles place": (1.2840, 103.8515),
    "marina bay": (1.2806, 103.8545),
    "marina bay sands": (1.2834, 103.8607),
    "gardens by the bay": (1.2816, 103.8636),
    "chinatown": (1.2847, 103.8442),
    "clarke quay": (1.2884, 103.8465),
    "bugis": (1.3000, 103.8559),
    "little india": (1.3066, 103.8493),
    "tanjong pagar": (1.2764, 103.8456),
    "harbourfront": (1.2653, 103.8220),
    "vivocity": (1.2644, 103.8223),
    "sentosa": (1.2494, 103.8303),
    "changi airport": (1.3644, 103.9915),
    "jewel changi": (1.3602, 103.9898),
    "tampines": (1.3532, 103.9452),
    "pasir ris": (1.3731, 103.9493),
    "bedok": (1.3240, 103.9301),
    "paya lebar": (1.3177, 103.8927),
    "serangoon": (1.3497, 103.8737),
    "hougang": (1.3713, 103.8925),
    "punggol": (1.4053, 103.9023),
    "sengkang": (1.3917, 103.8954),
    "ang mo kio": (1.3700, 103.8496),
    "bishan": (1.3510, 103.8485),
    "toa payoh": (1.3327, 103.8474),
    "novena": (1.3203, 103.8438),
    "newton": (1.3138, 103.8380),
    "yishun": (1.4295, 103.8350),
    "woodlands": (1.4370, 103.7865),
    "sembawang": (1.4491, 103.8201),
    "choa chu kang": (1.3853, 103.7443),
    "bukit panjang": (1.3784, 103.7620),
    "bukit batok": (1.3490, 103.7496),
    "jurong east": (1.3332, 103.7422),
    "jurong point": (1.3397, 103.7066),
    "boon lay": (1.3386, 103.7058),
    "clementi": (1.3151, 103.7652),
    "buona vista": (1.3073, 103.7903),
    "one-north": (1.2996, 103.7873),
    "queenstown": (1.2942, 103.8060),
    "national university of singapore": (1.2966, 103.7764),
    "nus": (1.2966, 103.7764),
    "nanyang technological university": (1.3483, 103.6831),
    "ntu": (1.3483, 103.6831),
    "singapore general hospital": (1.2797, 103.8349),
    "botanic gardens": (1.3138, 103.8159),
    "singapore zoo": (1.4043, 103.7930),
    "kallang": (1.3114, 103.8714),
    "national stadium": (1.3040, 103.8748),
    "geylang": (1.3185, 103.8872),
    "holland village": (1.3112, 103.7961),
    "bukit timah": (1.3294, 103.8021),
    "east coast park": (1.3008, 103.9122),
}


class Gazetteer:
    """Name -> coordinate lookup with exact and substring matching."""

    def __init__(self, places: dict[str, tuple[float, float]] | None = None):
        source = SINGAPORE_PLACES if places is None else places
        self._places = {k.strip().lower(): v for k, v in source.items()}

    @staticmethod
    def _key(query: str) -> str:
        return " ".join((query or "").lower().split())

    def lookup_exact(self, query: str) -> Place | None:
        key = self._key(query)
        coords = self._places.get(key)
        if coords is None:
            return None
        return Place(name=key, lat=coords[0], lng=coords[1])

    def lookup_partial(self, query: str) -> Place | None:
        """
        First place whose name contains the query, or whose name appears in
        the query as whole words ("nus" matches "nus hostel", not "venus").
        """
        key = self._key(query)
        if len(key) < MIN_PARTIAL_QUERY_LEN:
            return None
        words = _words(key)
        for name, (lat, lng) in self._places.items():
            if key in name or _contains_run(words, _words(name)):
                return Place(name=name, lat=lat, lng=lng)
        return None


def _words(text: str) -> list[str]:
    return re.findall(r"[a-z0-9]+", text)


def _contains_run(words: list[str], run: list[str]) -> bool:
    n = len(run)
    if n == 0:
        return False
    return any(words[i:i + n] == run for i in range(len(words) - n + 1))
