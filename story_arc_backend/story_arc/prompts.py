from typing import Optional

SYSTEM_PROMPT = """You are the Story Arc Engine for a children's animation platform. You receive a child's drawing (as an image) and/or a text description of a character, plus a parent's lesson, and you output a complete image-to-video production plan for a 32-second cartoon.
- The drawing, when provided, is the primary source of truth for the hero's appearance.
- Every story has a Hero, a Villain and a Character Arc that teaches the parent's lesson.
- Exactly 4 scenes, 4 static keyframes (one per scene) and 4 eight-second video clips.
- The hero's appearance must stay exactly consistent across all keyframes and clips; the first character model image is the strict reference.
Output ONLY valid JSON matching the provided schema."""


PLAN_SCHEMA = r"""{
  "characterModel": {"source": "<canonical description of the hero's look>", "action": "<what the character model step produces>"},
  "storyAnalysis": {
    "hero": "<hero name>",
    "parentPrompt": "<the parent's lesson, echoed>",
    "coreLesson": "<one sentence>",
    "villain": "<villain>",
    "characterArc": "<how the hero changes>",
    "characterPersona": "<personality, way of speaking, motivations; used for chat and voice>"
  },
  "episodeScript": {
    "action": "<summary of the script step>",
    "scenes": [{"scene": <int>, "title": "<title>", "dialog": "<first-person words the hero speaks, fits 8 seconds>"}]
  },
  "staticKeyframes": {
    "action": "<summary of the keyframe step>",
    "keyframes": [{"keyframe": <int>, "scene": <int>, "prompt": "<image prompt placing the hero in the scene>"}]
  },
  "videoGeneration": {
    "action": "<summary of the animation step>",
    "clips": [{"clip": <int>, "input": "Static Keyframe #<int>", "prompt": "<motion prompt for 8 seconds>"}]
  },
  "postProcessing": {"action": "<music, sound and editing notes>"}
}"""


USER_PROMPT_TEMPLATE = """Language for all generated content: {language}

Inputs:
- Drawing description: {description}
- Parent prompt: {lesson}
- Reference drawing attached: {has_image}

Schema:
{schema}

Constraints:
- Each scene's dialog is unique, age-appropriate direct speech by the hero.
- Keyframe N belongs to scene N; clip N animates "Static Keyframe #N".
- All story text, dialog and prompts are written in {language}.
Return ONLY valid JSON for the schema above."""


# JSON schema handed to backends that support constrained decoding
PLAN_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "characterModel": {
            "type": "OBJECT",
            "properties": {"source": {"type": "STRING"}, "action": {"type": "STRING"}},
            "required": ["source", "action"],
        },
        "storyAnalysis": {
            "type": "OBJECT",
            "properties": {
                "hero": {"type": "STRING"},
                "parentPrompt": {"type": "STRING"},
                "coreLesson": {"type": "STRING"},
                "villain": {"type": "STRING"},
                "characterArc": {"type": "STRING"},
                "characterPersona": {"type": "STRING"},
            },
            "required": ["hero", "parentPrompt", "coreLesson", "villain", "characterArc", "characterPersona"],
        },
        "episodeScript": {
            "type": "OBJECT",
            "properties": {
                "action": {"type": "STRING"},
                "scenes": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "scene": {"type": "INTEGER"},
                            "title": {"type": "STRING"},
                            "dialog": {"type": "STRING"},
                        },
                        "required": ["scene", "title", "dialog"],
                    },
                },
            },
            "required": ["action", "scenes"],
        },
        "staticKeyframes": {
            "type": "OBJECT",
            "properties": {
                "action": {"type": "STRING"},
                "keyframes": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "keyframe": {"type": "INTEGER"},
                            "scene": {"type": "INTEGER"},
                            "prompt": {"type": "STRING"},
                        },
                        "required": ["keyframe", "scene", "prompt"],
                    },
                },
            },
            "required": ["action", "keyframes"],
        },
        "videoGeneration": {
            "type": "OBJECT",
            "properties": {
                "action": {"type": "STRING"},
                "clips": {
                    "type": "ARRAY",
                    "items": {
                        "type": "OBJECT",
                        "properties": {
                            "clip": {"type": "INTEGER"},
                            "input": {"type": "STRING"},
                            "prompt": {"type": "STRING"},
                        },
                        "required": ["clip", "input", "prompt"],
                    },
                },
            },
            "required": ["action", "clips"],
        },
        "postProcessing": {
            "type": "OBJECT",
            "properties": {"action": {"type": "STRING"}},
            "required": ["action"],
        },
    },
    "required": ["characterModel", "storyAnalysis", "episodeScript", "staticKeyframes", "videoGeneration", "postProcessing"],
}


# Fixed visual style. Not user configurable so every run has the same look.
STYLE_DIRECTIVE = (
    "Style: 3D Disney Pixar animation style, high quality, vibrant colors, smooth textures, "
    "expressive features, professional animation quality."
)

CONSISTENCY_DIRECTIVE = (
    "Maintain EXACT character appearance consistency with the first character model image. "
    "The character's appearance, clothing, colors, and features must be identical to the character model."
)


def build_user_prompt(description: Optional[str], lesson: str, language: str, has_image: bool) -> str:
    return USER_PROMPT_TEMPLATE.format(
        language=language,
        description=description or "(none, use the attached drawing)",
        lesson=lesson,
        has_image="yes" if has_image else "no",
        schema=PLAN_SCHEMA,
    )


def build_character_prompt(action: str, source: str) -> str:
    return f'{action}. The character should be based on this description: "{source}". {STYLE_DIRECTIVE}'


def build_keyframe_prompt(keyframe_prompt: str) -> str:
    return f"{keyframe_prompt}. {STYLE_DIRECTIVE} {CONSISTENCY_DIRECTIVE}"


def build_clip_prompt(clip_prompt: str, hero: str, dialog: str) -> str:
    return (
        f'{clip_prompt}. The character {hero} is speaking: "{dialog}". '
        "Show expressive mouth movements and gestures that match the dialog. "
        "Maintain EXACT character appearance consistency with the first character model image."
    )
