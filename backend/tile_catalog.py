"""
Static tile catalog for Glimpse.

Core tiles, per-context phrase sets, the entity -> tile boost table, and the
small lookup tables used by the location picker and the places lookup.
Pure data: nothing here is mutated at runtime.
"""

from typing import Dict, List, Tuple

from aac_models import ContextType, TileDefinition

# Core tiles (always shown)
CORE_TILES: Tuple[TileDefinition, ...] = (
    TileDefinition("core_yes", "Yes", "Yes", "✅", 100, always_show=True),
    TileDefinition("core_no", "No", "No", "❌", 100, always_show=True),
    TileDefinition("core_help", "Help", "I need help", "🙋", 100, always_show=True),
    TileDefinition("core_more", "More", None, "➕", 100, always_show=True, action="expand_grid"),
)

TILE_SETS: Dict[ContextType, Tuple[TileDefinition, ...]] = {
    ContextType.RESTAURANT_COUNTER: (
        TileDefinition("rc_1", "I want to order", "I would like to order please", "🍔", 10),
        TileDefinition("rc_2", "Menu please", "Can I see the menu please?", "📜", 9),
        TileDefinition("rc_3", "How much?", "How much does that cost?", "💰", 8),
        TileDefinition("rc_4", "Water please", "Can I have some water please?", "💧", 7),
        TileDefinition("rc_5", "That one", "I would like that one please", "👉", 8),
        TileDefinition("rc_6", "No thank you", "No thank you", "🚫", 6),
        TileDefinition("rc_7", "Pay now", "I would like to pay please", "💳", 7),
        TileDefinition("rc_8", "Bathroom?", "Where is the bathroom?", "🚻", 5),
    ),
    ContextType.RESTAURANT_TABLE: (
        TileDefinition("rt_1", "I'm ready", "I am ready to order", "🙋", 10),
        TileDefinition("rt_2", "More please", "Can I have more please?", "➕", 9),
        TileDefinition("rt_3", "Napkin", "Can I have a napkin please?", "🧻", 7),
        TileDefinition("rt_4", "Too hot", "This is too hot", "🥵", 8),
        TileDefinition("rt_5", "Yummy!", "This is yummy!", "😋", 8),
        TileDefinition("rt_6", "All done", "I am all done", "✅", 9),
        TileDefinition("rt_7", "Drink please", "Can I have a drink please?", "🥤", 8),
        TileDefinition("rt_8", "Bathroom?", "Where is the bathroom?", "🚻", 5),
    ),
    ContextType.PLAYGROUND: (
        TileDefinition("pg_1", "Can I play?", "Can I play with you?", "🤝", 10),
        TileDefinition("pg_2", "My turn", "It is my turn now", "🏃", 9),
        TileDefinition("pg_3", "Push me", "Can you push me please?", "🫷", 8),
        TileDefinition("pg_4", "Higher!", "Higher please!", "⬆️", 7),
        TileDefinition("pg_5", "I need help", "I need help please", "🙋", 10),
        TileDefinition("pg_6", "Stop", "Stop please", "✋", 9),
        TileDefinition("pg_7", "Again!", "Again! Let us do it again!", "🔄", 7),
        TileDefinition("pg_8", "I am tired", "I am tired", "😴", 6),
    ),
    ContextType.CLASSROOM: (
        TileDefinition("cl_1", "I know!", "I know the answer!", "🙋", 9),
        TileDefinition("cl_2", "I don't understand", "I don't understand, can you help me?", "🤔", 10),
        TileDefinition("cl_3", "Bathroom please", "Can I go to the bathroom please?", "🚻", 9),
        TileDefinition("cl_4", "I'm finished", "I am finished", "✅", 8),
        TileDefinition("cl_5", "Pencil please", "Can I have a pencil please?", "✏️", 7),
        TileDefinition("cl_6", "Break please", "Can I have a break please?", "⏸️", 8),
        TileDefinition("cl_7", "Too loud", "It is too loud", "🔊", 6),
        TileDefinition("cl_8", "Read to me", "Can you read this to me?", "📖", 7),
    ),
    ContextType.HOME_KITCHEN: (
        TileDefinition("hk_1", "Hungry", "I am hungry, can I have a snack?", "🥨", 10),
        TileDefinition("hk_2", "Thirsty", "I am thirsty, can I have a drink?", "🥤", 10),
        TileDefinition("hk_3", "Juice", "Can I have some juice please?", "🧃", 9),
        TileDefinition("hk_4", "Milk", "Can I have some milk please?", "🥛", 9),
        TileDefinition("hk_5", "Cookie", "Can I have a cookie please?", "🍪", 8),
        TileDefinition("hk_6", "Fruit", "Can I have some fruit please?", "🍎", 8),
        TileDefinition("hk_7", "Open this", "Can you help me open this please?", "👐", 9),
        TileDefinition("hk_8", "All done", "I am all done now", "✅", 7),
    ),
    ContextType.HOME_LIVING: (
        TileDefinition("hl_1", "Watch TV", "Can I watch TV please?", "📺", 9),
        TileDefinition("hl_2", "Play a game", "Can we play a game?", "🎲", 9),
        TileDefinition("hl_3", "Read a book", "Can we read a book?", "📚", 8),
        TileDefinition("hl_4", "Cuddle", "Can I have a cuddle?", "🤗", 10),
        TileDefinition("hl_5", "Music", "Can we put some music on?", "🎵", 7),
        TileDefinition("hl_6", "Turn it off", "Please turn it off", "📴", 6),
        TileDefinition("hl_7", "I'm cold", "I am cold", "🥶", 7),
        TileDefinition("hl_8", "Go outside", "Can we go outside?", "🌳", 8),
    ),
    ContextType.STORE_CHECKOUT: (
        TileDefinition("sc_1", "I want this", "I want to buy this please", "🛍️", 10),
        TileDefinition("sc_2", "How much?", "How much does this cost?", "💰", 9),
        TileDefinition("sc_3", "Bag please", "Can I have a bag please?", "👜", 7),
        TileDefinition("sc_4", "I'll pay", "I would like to pay please", "💳", 9),
        TileDefinition("sc_5", "Receipt please", "Can I have the receipt please?", "🧾", 6),
        TileDefinition("sc_6", "Thank you", "Thank you very much", "🙏", 8),
        TileDefinition("sc_7", "Where is it?", "Where can I find this?", "🔎", 7),
        TileDefinition("sc_8", "Not this one", "Not this one, thank you", "🚫", 6),
    ),
    ContextType.MEDICAL_OFFICE: (
        TileDefinition("mo_1", "It hurts here", "It hurts here", "🤕", 10),
        TileDefinition("mo_2", "I'm scared", "I am scared", "😨", 10),
        TileDefinition("mo_3", "Wait please", "Please wait a moment", "✋", 9),
        TileDefinition("mo_4", "I feel sick", "I feel sick", "🤢", 9),
        TileDefinition("mo_5", "Hold my hand", "Can you hold my hand?", "🤝", 8),
        TileDefinition("mo_6", "Is it done?", "Is it done yet?", "⏱️", 7),
        TileDefinition("mo_7", "I feel better", "I feel better now", "🙂", 6),
        TileDefinition("mo_8", "Sticker please", "Can I have a sticker please?", "⭐", 5),
    ),
    ContextType.BATHROOM: (
        TileDefinition("ba_1", "I need to go", "I need to use the toilet", "🚽", 10),
        TileDefinition("ba_2", "Help me", "Can you help me please?", "🙋", 10),
        TileDefinition("ba_3", "Wash hands", "I want to wash my hands", "🧼", 8),
        TileDefinition("ba_4", "Privacy please", "Can I have some privacy please?", "🚪", 9),
        TileDefinition("ba_5", "Paper please", "Can I have some toilet paper?", "🧻", 7),
        TileDefinition("ba_6", "All done", "I am all done", "✅", 8),
    ),
    ContextType.GREETING: (
        TileDefinition("gr_1", "Hello!", "Hello!", "👋", 10),
        TileDefinition("gr_2", "What's your name?", "What is your name?", "❓", 9),
        TileDefinition("gr_3", "My name is...", "Hi, let me tell you my name", "🙂", 8),
        TileDefinition("gr_4", "How are you?", "How are you?", "😊", 9),
        TileDefinition("gr_5", "Nice to meet you", "Nice to meet you!", "🤝", 7),
        TileDefinition("gr_6", "Bye bye", "Bye bye! See you later!", "👋", 8),
        TileDefinition("gr_7", "Thank you", "Thank you!", "🙏", 7),
    ),
    # Feelings mode: selfie / face-forward frames or an unclassifiable scene
    ContextType.UNKNOWN: (
        TileDefinition("feel_1", "Happy", "I am feeling happy", "😊", 10),
        TileDefinition("feel_2", "Sad", "I am feeling sad", "😢", 10),
        TileDefinition("feel_3", "Tired", "I am feeling tired", "😴", 9),
        TileDefinition("feel_4", "Hungry", "I am hungry", "🍽️", 9),
        TileDefinition("feel_5", "Hurt", "Something hurts", "🤕", 10),
    ),
}

# Detected entity -> tile ids whose score is boosted
ENTITY_TILE_MAP: Dict[str, Tuple[str, ...]] = {
    # Playground
    "swing": ("pg_3", "pg_4", "pg_2"),
    "swings": ("pg_3", "pg_4", "pg_2"),
    "slide": ("pg_2", "pg_7"),
    "other_children": ("pg_1", "pg_2"),
    "children": ("pg_1", "pg_2"),
    "kid": ("pg_1", "pg_2"),
    "kids": ("pg_1", "pg_2"),
    "sandbox": ("pg_1", "pg_2"),
    "climbing_frame": ("pg_5", "pg_6"),
    # Restaurant
    "cashier": ("rc_3", "rc_7", "sc_2", "sc_4"),
    "counter": ("rc_1", "rc_2"),
    "menu_board": ("rc_1", "rc_2"),
    "menu": ("rc_2", "rt_1"),
    "food": ("rc_5", "rc_1", "rt_5"),
    "drink": ("rc_4", "rc_5", "rt_7"),
    "ice_cream": ("rc_5", "rc_3"),
    "plate": ("rt_2", "rt_6"),
    "napkin": ("rt_3",),
    "waiter": ("rt_1", "rt_7"),
    # Generic / cross-context
    "water_fountain": ("rc_4",),
    "bathroom_sign": ("rc_8", "rt_8", "cl_3"),
    "toilet": ("rc_8", "ba_1"),
    "restroom": ("rc_8", "ba_1"),
    "sink": ("ba_3",),
    "adult": ("core_help", "pg_5"),
    "parent": ("core_help",),
    "teacher": ("core_help", "cl_2"),
    # Kitchen / pantry
    "refrigerator": ("hk_2", "hk_3", "hk_4"),
    "fridge": ("hk_2", "hk_3", "hk_4"),
    "pantry": ("hk_1", "hk_5", "hk_6"),
    "cabinet": ("hk_1", "hk_5", "hk_7"),
    "shelf": ("hk_1", "hk_5"),
    "bottle": ("hk_2", "hk_3", "hk_7"),
    "cup": ("hk_2", "hk_4"),
    "glass": ("hk_2", "hk_4"),
    "juice_box": ("hk_3", "hk_7"),
    "snack_bag": ("hk_1", "hk_5", "hk_7"),
    # Living room
    "tv": ("hl_1",),
    "television": ("hl_1",),
    "sofa": ("hl_4", "hl_3"),
    "couch": ("hl_4", "hl_3"),
    "board_game": ("hl_2",),
    # Classroom
    "whiteboard": ("cl_2", "cl_1"),
    "pencil": ("cl_5",),
    "worksheet": ("cl_2", "cl_4"),
    # Store
    "shopping_cart": ("sc_1", "sc_7"),
    "cash_register": ("sc_4", "sc_2"),
    "shopping_bag": ("sc_3",),
    # Medical
    "stethoscope": ("mo_2", "mo_5"),
    "needle": ("mo_2", "mo_5", "mo_3"),
    "nurse": ("mo_1", "mo_4"),
    "doctor": ("mo_1", "mo_4"),
}

# Google Places type -> context
PLACE_TYPE_TO_CONTEXT: Dict[str, ContextType] = {
    "restaurant": ContextType.RESTAURANT_COUNTER,
    "fast_food_restaurant": ContextType.RESTAURANT_COUNTER,
    "cafe": ContextType.RESTAURANT_COUNTER,
    "food": ContextType.RESTAURANT_COUNTER,
    "playground": ContextType.PLAYGROUND,
    "park": ContextType.PLAYGROUND,
    "school": ContextType.CLASSROOM,
    "hospital": ContextType.MEDICAL_OFFICE,
    "doctor": ContextType.MEDICAL_OFFICE,
    "store": ContextType.STORE_CHECKOUT,
    "supermarket": ContextType.STORE_CHECKOUT,
    "grocery_store": ContextType.STORE_CHECKOUT,
}

# (context, emoji, label) shown by the location picker / full picker prompt
LOCATION_OPTIONS: Tuple[Tuple[ContextType, str, str], ...] = (
    (ContextType.RESTAURANT_COUNTER, "🍟", "Restaurant"),
    (ContextType.PLAYGROUND, "🛝", "Playground"),
    (ContextType.HOME_KITCHEN, "🏠", "Home"),
    (ContextType.CLASSROOM, "📚", "School"),
    (ContextType.STORE_CHECKOUT, "🛒", "Store"),
    (ContextType.MEDICAL_OFFICE, "🏥", "Doctor"),
)

CONTEXT_ICONS: Dict[ContextType, str] = {context: emoji for context, emoji, _ in LOCATION_OPTIONS}

ENTITY_EMOJIS: Dict[str, str] = {
    "swing": "🎢", "swings": "🎢", "slide": "🛝", "sandbox": "🏖️", "climbing_frame": "🧗",
    "child": "👧", "children": "👧", "kids": "👧", "kid": "👧",
    "adult": "🧑", "parent": "👨‍👩‍👧", "teacher": "👩‍🏫", "person": "🧑",
    "cashier": "🧑‍💼", "counter": "🛒", "menu": "📜", "menu_board": "📋",
    "food": "🍔", "drink": "🥤", "ice_cream": "🍦",
    "glasses": "👓", "sunglasses": "🕶️", "earbuds": "🎧", "headphones": "🎧",
    "watch": "⌚", "hat": "🧢", "cap": "🧢",
    "water_fountain": "🚰", "bathroom": "🚻", "toilet": "🚽", "restroom": "🚻",
    "door": "🚪", "table": "🪑", "chair": "🪑", "phone": "📱", "laptop": "💻", "book": "📖",
    "dog": "🐕", "cat": "🐈", "bird": "🐦",
}

# Returned when entity phrase generation fails
FALLBACK_ENTITY_PHRASES: Tuple[Tuple[str, str, str], ...] = (
    ("I see that!", "I see that!", "👀"),
    ("Cool!", "That is cool!", "😎"),
    ("I like it", "I like that", "👍"),
)


def tiles_for_context(context: ContextType) -> Tuple[TileDefinition, ...]:
    """Context tile set, falling back to the feelings set when empty."""
    tiles = TILE_SETS.get(context, ())
    if not tiles:
        return TILE_SETS[ContextType.UNKNOWN]
    return tiles


def find_tile(tile_id: str) -> TileDefinition | None:
    for tile in CORE_TILES:
        if tile.id == tile_id:
            return tile
    for tiles in TILE_SETS.values():
        for tile in tiles:
            if tile.id == tile_id:
                return tile
    return None


def entity_emoji(entity: str) -> str:
    return ENTITY_EMOJIS.get(entity, "🔍")


def location_menu() -> List[dict]:
    return [
        {"context": context.value, "emoji": emoji, "label": label}
        for context, emoji, label in LOCATION_OPTIONS
    ]
