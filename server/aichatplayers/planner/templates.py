from __future__ import annotations

import logging
import random


TEMPLATES: dict[str, list[str]] = {
    "greeting": [
        "siema",
        "hej hej",
        "elo wszystkim",
        "czesc, co tam?",
        "siemka, jak leci?",
        "witam na serwerze",
        "o, siema",
    ],
    "pvp_neutral": [
        "ja dzis tylko farmie, bez pvp",
        "nie, ide kopac diaxy",
        "moze pozniej, teraz buduje",
        "pas, mam slaby sprzet",
        "nie dzis, ogarniam baze",
        "pvp? nie, wole spokojnie pograc",
    ],
    "event": [
        "o, event, ide zobaczyc",
        "kiedy start?",
        "jest cos fajnego do wygrania?",
        "lece na event",
        "nareszcie jakis event",
        "gdzie sie zbieramy?",
    ],
    "help": [
        "sprawdz /spawn, tam jest info",
        "wpisz /help, tam wszystko jest",
        "na spawnie sa tabliczki z poradnikiem",
        "najpierw zrob sobie narzedzia z kamienia",
        "zapytaj na /pomoc, ktos ogarnie",
        "ja zaczynalem od drewna i kamienia",
    ],
    "small_talk": [
        "ale dzis spokojnie na serwerze",
        "ktos widzial gdzie sa wioski?",
        "ja dalej kopie, nic ciekawego",
        "fajnie sie dzis gra",
        "ktos ma zbedne zelazo?",
        "w koncu zrobilem sobie dom",
        "lag czy tylko u mnie?",
    ],
    "newbie_addon": [
        "jestem nowy",
        "dopiero zaczynam",
        "sorki, nowy tu jestem",
    ],
    "friendly_emoji": [
        ":)",
        ":D",
        "xD",
        ";)",
    ],
}

LOGGER = logging.getLogger("aichatplayers.planner.templates")


def choose_template(kind: str, rng: random.Random) -> str:
    options = TEMPLATES.get(kind, [])
    if not options:
        LOGGER.debug("template_kind_missing kind=%s", kind)
        return ""
    return options[rng.randrange(len(options))]
