"""WHOOP sport id → human-readable sport name.

The v2 workout payload usually carries ``sport_name`` itself; this table is
the fallback for records that only have ``sport_id`` (older data and v1
migrated workouts).
"""

from __future__ import annotations

WHOOP_SPORTS: dict[int, str] = {
    -1: "Activity",
    0: "Running",
    1: "Cycling",
    16: "Baseball",
    17: "Basketball",
    18: "Rowing",
    19: "Fencing",
    20: "Field Hockey",
    21: "Football",
    22: "Golf",
    24: "Ice Hockey",
    25: "Lacrosse",
    27: "Rugby",
    28: "Sailing",
    29: "Skiing",
    30: "Soccer",
    31: "Softball",
    32: "Squash",
    33: "Swimming",
    34: "Tennis",
    35: "Track & Field",
    36: "Volleyball",
    37: "Water Polo",
    38: "Wrestling",
    39: "Boxing",
    42: "Dance",
    43: "Pilates",
    44: "Yoga",
    45: "Weightlifting",
    47: "Cross Country Skiing",
    48: "Functional Fitness",
    49: "Duathlon",
    51: "Gymnastics",
    52: "Hiking/Rucking",
    53: "Horseback Riding",
    55: "Kayaking",
    56: "Martial Arts",
    57: "Mountain Biking",
    59: "Powerlifting",
    60: "Rock Climbing",
    61: "Paddleboarding",
    62: "Triathlon",
    63: "Walking",
    64: "Surfing",
    65: "Elliptical",
    66: "Stairmaster",
    70: "Meditation",
    71: "Other",
    73: "Diving",
    82: "Ultimate",
    83: "Climber",
    84: "Jumping Rope",
    85: "Australian Football",
    86: "Skateboarding",
    87: "Coaching",
    88: "Ice Bath",
    89: "Commuting",
    90: "Gaming",
    91: "Snowboarding",
    92: "Motocross",
    93: "Caddying",
    94: "Obstacle Course Racing",
    95: "Motor Racing",
    96: "HIIT",
    97: "Spin",
    98: "Jiu Jitsu",
    99: "Manual Labor",
    100: "Cricket",
    101: "Pickleball",
    102: "Inline Skating",
    103: "Box Fitness",
    104: "Spikeball",
    105: "Wheelchair Pushing",
    106: "Paddle Tennis",
    107: "Barre",
    108: "Stage Performance",
    109: "High Stress Work",
    110: "Parkour",
    121: "Massage Therapy",
    123: "Strength Trainer",
    125: "Watching Sports",
    126: "Assault Bike",
    127: "Kickboxing",
    128: "Stretching",
    230: "Table Tennis",
    231: "Badminton",
    232: "Netball",
    233: "Sauna",
    234: "Disc Golf",
    235: "Yard Work",
    239: "Ice Skating",
    240: "Handball",
    249: "Padel",
    259: "Hot Yoga",
    266: "Dog Walking",
}


def sport_name(sport_id: int | None, api_name: str | None = None) -> str:
    """Return the display name for a workout's sport.

    Known ids use the table.  Otherwise the API-supplied name is used
    (v2 sends it snake_cased), and anything else falls back to
    ``"Activity <id>"``.
    """
    if sport_id is not None and sport_id in WHOOP_SPORTS:
        return WHOOP_SPORTS[sport_id]
    if api_name:
        return api_name.replace("_", " ").strip().title() if api_name.islower() else api_name
    if sport_id is None:
        return WHOOP_SPORTS[-1]
    return f"Activity {sport_id}"
