from typing import Optional

NOT_A_MENU_REPLY = (
    "I'm sorry, but that doesn't appear to be a readable menu or a menu at all. "
    "Please try uploading a clearer image of a menu."
)
NO_DISHES_REPLY = "No dishes could be identified from this image. Please ensure it's a clear image of a menu."

MENU_FOCUS_ALLERGENS = "peanuts, tree nuts, milk, fish, shellfish, egg, soy, wheat, and gluten"


def format_allergen_watchlist(allergens: list[str]) -> str:
    if not allergens:
        return "NONE_SELECTED"
    return ", ".join(item.upper() for item in allergens)


def build_dish_allergen_prompt(dish_name: str, allergens: list[str]) -> str:
    watchlist = format_allergen_watchlist(allergens)
    return "\n".join(
        [
            "You are an enthusiastic food expert who helps people spot allergens, with the warm, "
            "curious delivery of a TV food-science host.",
            "When given a dish name, open with a short description (about 50 words) of the dish, "
            "where it comes from and why people love it.",
            "Follow these allergen rules exactly:",
            f"1. The only allergens you may mention are on the user's watchlist: [{watchlist}].",
            "2. Work out which common food allergens the dish usually contains.",
            "3. In a bulleted list using the '• ' character, highlight only the allergens that are both "
            "in the dish and on the watchlist. Bold each one (for example • **MILK**).",
            "4. If none of the watchlist allergens are present, output exactly this single line: "
            '"**None of your selected allergens found.**"',
            "5. Then rate the dish's cross-contamination risk (low, moderate or high) from typical kitchen "
            "practice, add a general warning about shared kitchens, and tell the user to confirm with the "
            "establishment.",
            "",
            f'The dish name is: "{dish_name}"',
        ]
    )


def build_food_alternative_prompt(description: str, allergens: list[str]) -> str:
    watchlist = format_allergen_watchlist(allergens)
    return "\n".join(
        [
            "You are a seasoned chef and food scientist with an upbeat, story-telling voice. "
            "The user describes a dish they cannot eat or an experience they are craving, together with "
            "the allergens they must avoid.",
            "",
            f"User allergen watchlist (uppercase): [{watchlist}]",
            f'User description: "{description}"',
            "",
            "Suggest satisfying alternative dishes, techniques or ingredient swaps that recreate the "
            "experience while avoiding every allergen on the watchlist.",
            "",
            "Rules:",
            '1. Unless the watchlist is "NONE_SELECTED", never suggest anything containing a listed '
            "allergen, and say which listed allergens each alternative avoids.",
            "2. Give one to three alternatives, each formatted as: • **Alternative Name**: a short sensory "
            "description, one culinary insight, and how it avoids the listed allergens.",
            "3. Add swaps or preparation tips where they help.",
            "4. If the user's idea is already safe for their watchlist, say so and offer optional upgrades.",
            "5. If no safe analogue exists, say so honestly and suggest talking to a chef or allergist.",
            "6. Finish with a brief reminder about cross-contamination and checking with the establishment.",
        ]
    )


def build_menu_image_prompt(allergens: list[str], note: Optional[str] = None) -> str:
    lines = [
        "You are a culinary assistant that reads menu photos and identifies each dish and its common "
        "allergens.",
        f"Focus on these common allergens: {MENU_FOCUS_ALLERGENS}.",
    ]
    if allergens:
        lines.append(
            f"The user is especially watching for: [{format_allergen_watchlist(allergens)}]. "
            "Mark those with (WATCHLIST) after the allergen name."
        )
    lines.extend(
        [
            "",
            "Output one line per dish in the form: **[Dish Name]** - [allergens, comma-separated]",
            'If a dish has none of the listed allergens, write "No common allergens".',
            "",
            "Do not add any introduction or conclusion.",
            f'If the image is not a menu or cannot be read, reply exactly: "{NOT_A_MENU_REPLY}"',
            f'If no dishes can be identified, reply exactly: "{NO_DISHES_REPLY}"',
        ]
    )
    if note:
        lines.extend(["", f'Additional note from the user: "{note}"'])
    return "\n".join(lines)


_FAILURE_MARKERS = (
    "doesn't appear to be a readable menu or a menu at all",
    "No dishes could be identified from this image",
)


def is_menu_recognition_failure(text: str) -> bool:
    return any(marker in text for marker in _FAILURE_MARKERS)
