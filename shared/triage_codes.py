"""
Keyword tables for incident triage.

Each triage entry contains:
  - triage: TriageType value the entry votes for
  - category: IncidentCategory reported with it
  - high_severity: whether a match alone marks the incident HIGH
  - keywords: phrases matched against free text. Multi-word phrases are
              weighted higher during matching.

Cue lists adapted from the Ontario ACR problem code descriptors
(https://www.ontario.ca/page/ambulance-call-report-codes).
"""

TRIAGE_CODES = [
    # ── Cardiac ───────────────────────────────────────────────────────────
    {
        "triage": "STEMI",
        "category": "MEDICAL",
        "high_severity": True,
        "keywords": [
            "heart attack", "chest pain", "crushing chest pain", "chest tightness",
            "pressure in chest", "pain down left arm", "stemi", "st elevation",
            "cardiac arrest", "no pulse", "myocardial infarction", "angina",
            "heart pain", "squeezing chest", "cardiac",
        ],
    },

    # ── Neurological ──────────────────────────────────────────────────────
    {
        "triage": "Stroke",
        "category": "MEDICAL",
        "high_severity": True,
        "keywords": [
            "stroke", "face drooping", "face is drooping", "arm weakness",
            "slurred speech", "speech difficulty", "can't move one side",
            "one side numb", "sudden numbness", "sudden confusion", "tia",
            "mini stroke", "paralysis one side",
        ],
    },

    # ── Trauma ────────────────────────────────────────────────────────────
    {
        "triage": "Trauma",
        "category": "ACCIDENT",
        "high_severity": False,
        "keywords": [
            "car accident", "vehicle accident", "collision", "crash",
            "pedestrian hit", "hit by car", "motorcycle accident",
            "fell from height", "fell down stairs", "fall", "stabbing",
            "stabbed", "gunshot", "shot", "head injury", "broken bone",
            "fracture", "bleeding", "trauma", "injured", "mva",
        ],
    },

    # ── Burns ─────────────────────────────────────────────────────────────
    {
        "triage": "Burns",
        "category": "FIRE",
        "high_severity": False,
        "keywords": [
            "burn", "burns", "burned", "burnt", "scalded", "scald",
            "fire", "house fire", "smoke", "smoke inhalation", "explosion",
            "chemical burn", "electrical burn", "flames",
        ],
    },

    # ── Pediatric ─────────────────────────────────────────────────────────
    {
        "triage": "Pediatric",
        "category": "MEDICAL",
        "high_severity": False,
        "keywords": [
            "child", "baby", "infant", "newborn", "toddler", "kid",
            "my son", "my daughter", "baby not breathing", "febrile seizure",
            "child choking",
        ],
    },

    # ── General ───────────────────────────────────────────────────────────
    {
        "triage": "General",
        "category": "MEDICAL",
        "high_severity": False,
        "keywords": [
            "dizzy", "dizziness", "weakness", "fever", "vomiting",
            "abdominal pain", "back pain", "fainted", "unwell",
            "not feeling well", "allergic reaction", "diabetic",
            "headache", "medical emergency",
        ],
    },
]

# Cues that raise any incident to HIGH severity regardless of triage.
HIGH_SEVERITY_KEYWORDS = [
    "not breathing", "no pulse", "unconscious", "unresponsive",
    "severe bleeding", "heavy bleeding", "bleeding won't stop",
    "can't breathe", "cannot breathe", "choking", "seizure",
    "multiple injuries", "trapped", "critical", "dying",
    "overdose", "anaphylaxis", "massive",
]

# Cues that tag the category without implying a triage type.
CATEGORY_KEYWORDS = {
    "FIRE": ["fire", "smoke", "burning", "flames", "explosion"],
    "ACCIDENT": ["accident", "crash", "collision", "hit by", "pile up"],
}
