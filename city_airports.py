"""
city_airports.py

Maps city/metro codes to their constituent airport IATA codes, and expands
one search into one SearchParams per origin x destination airport pair.

A LON->NYC search becomes LHR->JFK, LHR->EWR, LGW->JFK, LGW->EWR, each run as
its own job and merged by the coordinator.
"""

from typing import List

from schemas.search import SearchParams

CITY_AIRPORTS = {
    # UK and Europe
    "LON": ["LHR", "LGW", "STN", "LTN", "LCY"],
    "PAR": ["CDG", "ORY"],
    "MIL": ["MXP", "LIN", "BGY"],
    "ROM": ["FCO", "CIA"],
    "IST": ["IST", "SAW"],
    "STO": ["ARN", "BMA"],
    "MOW": ["SVO", "DME", "VKO"],
    # North America
    "NYC": ["JFK", "EWR", "LGA"],
    "WAS": ["IAD", "DCA", "BWI"],
    "CHI": ["ORD", "MDW"],
    "LAX": ["LAX", "BUR", "LGB", "SNA"],
    "SFO": ["SFO", "OAK", "SJC"],
    "MIA": ["MIA", "FLL"],
    "YTO": ["YYZ", "YTZ"],
    # Asia Pacific and Middle East
    "TYO": ["HND", "NRT"],
    "OSA": ["KIX", "ITM"],
    "SEL": ["ICN", "GMP"],
    "BJS": ["PEK", "PKX"],
    "SHA": ["PVG", "SHA"],
    "BKK": ["BKK", "DMK"],
    "DXB": ["DXB", "DWC"],
    # South America
    "SAO": ["GRU", "CGH", "VCP"],
    "BUE": ["EZE", "AEP"],
    "RIO": ["GIG", "SDU"],
}


def get_airports_for_code(code: str) -> List[str]:
    """
    Known city code -> its airports, busiest first.
    Anything else is treated as an airport code and returned as-is.
    """
    if not code:
        return []
    code = code.upper().strip()
    return list(dict.fromkeys(CITY_AIRPORTS.get(code, [code])))


def is_city_code(code: str) -> bool:
    return (code or "").upper().strip() in CITY_AIRPORTS


def expand_airport_pairs(params: SearchParams, max_per_city: int) -> List[SearchParams]:
    origins = get_airports_for_code(params.origin)[:max_per_city]
    destinations = get_airports_for_code(params.destination)[:max_per_city]

    pairs = [
        params.model_copy(update={"origin": o, "destination": d})
        for o in origins
        for d in destinations
        if o != d
    ]
    return pairs or [params]
