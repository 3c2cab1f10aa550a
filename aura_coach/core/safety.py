CRISIS_PATTERNS = [
    "kill myself",
    "end my life",
    "suicide",
    "suicidal",
    "want to die",
    "hurt myself",
    "self-harm",
    "self harm",
    "ta livet av mig",
    "vill dö",
    "självmord",
    "skada mig själv",
]

CRISIS_REPLIES = {
    "en": (
        "I'm really glad you told me, and your safety matters most right now.\n"
        "1. Open the Crisis page in the app for immediate support lines.\n"
        "2. If you are in danger, call your local emergency number now.\n"
        "3. Reach out to someone you trust and tell them how you feel.\n"
        "Can you open the Crisis page now, or is someone with you?"
    ),
    "sv": (
        "Jag är glad att du berättar, och din säkerhet är viktigast just nu.\n"
        "1. Öppna Kris-sidan i appen för stödlinjer direkt.\n"
        "2. Om du är i fara, ring 112 nu.\n"
        "3. Kontakta någon du litar på och berätta hur du mår.\n"
        "Kan du öppna Kris-sidan nu, eller finns någon hos dig?"
    ),
}


def detect_crisis_flags(text: str) -> list[str]:
    lowered = (text or "").lower()
    if any(pattern in lowered for pattern in CRISIS_PATTERNS):
        return ["crisis_language"]
    return []


def crisis_reply(lang: str) -> str:
    base = (lang or "en").strip().lower().split("-")[0]
    return CRISIS_REPLIES.get(base, CRISIS_REPLIES["en"])
