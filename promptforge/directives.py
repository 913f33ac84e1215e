"""Directive assembly for prompt-generation requests.

Combines a batch manifest, the subject's identity profile, and the
mode-specific style rules into the single instruction payload sent to the
prompt-generation collaborator, together with the response schema that
constrains its output.

The downstream generator only ever sees natural-language policy text: the
wardrobe switch and the identity lock are expressed as rules and as the shape
of the schema, never as raw flags.

Usage:
    request = DirectiveRequest(
        slots=generate_manifest('lora', 50, 0, 10),
        task_type='lora',
        identity=profile,
        safety_mode='sfw',
        avoid_settings=tracker.window(25, 80),
    )
    directive = assemble_directive(request)

Author:
    PromptForge Contributors
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .manifest import format_manifest
from .media import ReferenceImage, parse_data_url, to_data_url
from .models import (
    AESTHETIC_CANDID,
    AESTHETIC_POLISHED,
    SAFETY_NSFW,
    SAFETY_MODES,
    TASK_GENERIC,
    TASK_LORA,
    TASK_PRODUCT,
    TASK_TYPES,
    TASK_UGC,
    IdentityProfile,
    ManifestSlot,
    UGCSettings,
)

__author__ = 'PromptForge Contributors'
__all__ = [
    'STYLE_VACUUM_COMPILER',
    'STYLE_RICH_CANDID',
    'STYLE_RICH_POLISHED',
    'SHAPE_FLAT',
    'SHAPE_RICH',
    'FACIAL_FIELD_TOKENS',
    'DEFAULT_REALISM_STACK',
    'DEFAULT_ARCHETYPE',
    'NEGATIVE_PROMPT',
    'ANALYSIS_DIRECTIVE',
    'ANALYSIS_SCHEMA',
    'SANITIZE_DIRECTIVE',
    'DirectiveRequest',
    'Directive',
    'select_style',
    'wardrobe_policy',
    'repetition_clause',
    'ordering_contract',
    'is_identity_locked',
    'strip_facial_fields',
    'schema_has_facial_fields',
    'build_response_schema',
    'assemble_directive',
]

logger = logging.getLogger('promptforge.directives')

STYLE_VACUUM_COMPILER = 'vacuum_compiler'
STYLE_RICH_CANDID = 'rich_candid'
STYLE_RICH_POLISHED = 'rich_polished'

SHAPE_FLAT = 'flat'
SHAPE_RICH = 'rich'

DEFAULT_REALISM_STACK = (
    'subsurface scattering, detailed skin texture, visible pores, faint skin sheen, '
    'peach fuzz, natural lip texture, unretouched, natural film grain'
)
DEFAULT_ARCHETYPE = 'young woman'

NEGATIVE_PROMPT = (
    'airbrushed, plastic skin, doll-like, smooth skin, cgi, 3d render, beauty filter, '
    'cartoon, illustration, bad anatomy, distorted hands, extra fingers, asymmetric eyes.'
)

# Schema keys whose underscore-separated parts start with one of these can
# encode facial structure
FACIAL_FIELD_TOKENS = ('face', 'facial', 'eye', 'nose', 'jaw', 'lip', 'brow', 'cheek', 'hair', 'gaze')


# ============================================================================
# Directive Texts
# ============================================================================

IDENTITY_LOCK_RULES = '''CORE LOGIC: SILENT FACE / LOUD BODY
1. SILENT FACE: NEVER describe facial features (eyes, nose, jaw, lips, brows, hair color) in the text.
   Facial geometry is supplied 100% by the reference image.
2. LOUD BODY: ALWAYS describe body morphology in high-density detail (Body Stack).
3. REALISM INJECTION: ALWAYS inject camera physics tags to prevent the plastic/smooth look.'''

STYLE_RULES = {
    STYLE_VACUUM_COMPILER: f'''PROMPT COMPILATION (THE VACUUM COMPILER)
Assemble the final text string using this Token-Density Order:

[Framing] + [Archetype] + [Action/Pose] + [Environment/Lighting] + [Body_Stack] + [Wardrobe] + [Realism_Stack] + [Tech_Specs]

- Framing: "Hyper-realistic [Shot Type]..."
- Archetype: "[Archetype], [Broad Aesthetic]..."
- Action/Pose: "[Specific Action]..."
- Environment: "[Setting details]..."
- Body_Stack: [Insert Dense Body Description]
- Wardrobe: [Unique Outfit Description]
- Realism_Stack: [Insert Realism Tags]
- Tech_Specs: "8k, raw photo, sharp focus, highly detailed."

NEGATIVE PROMPT (HARDCODED SAFETY NET):
"{NEGATIVE_PROMPT}"

OPERATIONAL RULES:
- No conversational filler.
- No facial adjectives. If you catch yourself writing "hazel eyes" or "small nose," DELETE IT.
- Realism is mandatory.
- Record the location of each item in generation_data.setting (a short phrase).''',

    STYLE_RICH_CANDID: '''VISIONSTRUCT RICH OBJECT - CANDID / AUTHENTIC
Describe each image as a structured object, every field filled with concrete detail.

REQUIRED REALISM CUES:
- Shot on a smartphone main camera, handheld, slight motion blur allowed.
- Natural, mixed or available light only. Visible skin texture, pores, flyaway strands of fabric.
- Everyday clutter in the environment; imperfect framing.

FORBIDDEN TERMS:
"studio lighting", "flawless", "perfect skin", "professional photoshoot", "8k", "masterpiece", "bokeh portrait mode".

Record the location of each item in background.setting (a short phrase).''',

    STYLE_RICH_POLISHED: '''VISIONSTRUCT RICH OBJECT - POLISHED / STUDIO
Describe each image as a structured object, every field filled with concrete detail.

REQUIRED REALISM CUES:
- Full-frame camera, prime lens (35mm-85mm), controlled key/fill/rim lighting.
- Retain real skin texture and fabric micro-detail; no retouching artifacts.
- Deliberate composition, clean backgrounds or curated sets.

FORBIDDEN TERMS:
"airbrushed", "plastic", "cgi", "3d render", "beauty filter", "cartoon", "illustration".

Record the location of each item in background.setting (a short phrase).''',
}

WARDROBE_FORM_ACCENTUATING = (
    'WARDROBE: ANATOMICAL/FIGURE-FORMING. Use technical terms: "second-skin fit", '
    '"anatomical seaming", "compressive", "sculpted", "bias-cut". Clothing must trace the body. '
    'Every item gets a unique outfit.'
)
WARDROBE_MODEST = (
    'WARDROBE: SFW/MODEST. Casual, standard, non-revealing garments with natural drape. '
    'Every item gets a unique outfit.'
)

PRODUCT_DIRECTIVE = (
    'MODE: PRODUCT AD. The attached product images are the hero of every item. '
    'Integrate the product naturally into the scene. Invent branding if generic.'
)

PLATFORM_NOTES = {
    'instagram': 'Instagram feed: 4:5 friendly composition, aspirational but relatable.',
    'tiktok': 'TikTok: vertical 9:16 framing, mid-action moments, creator-shot energy.',
    'youtube': 'YouTube: thumbnail-ready 16:9 framing, strong subject separation.',
    'linkedin': 'LinkedIn: professional context, approachable workplace settings.',
    'general': 'General social media: platform-neutral framing.',
}

ANALYSIS_DIRECTIVE = f'''IDENTITY:
You are a High-Fidelity Prompt Architect generating training-ready synthetic data.

{IDENTITY_LOCK_RULES}

TASK: Analyze the provided images and generate the Identity Profile.
CRITICAL CONSTRAINT:
- facial_description: MUST REMAIN EMPTY (SILENT).
- body_stack: High density anatomical description (Somatotype, Measurements, Tones).
Return JSON.'''

ANALYSIS_SCHEMA: dict[str, Any] = {
    'type': 'OBJECT',
    'properties': {
        'identity_profile': {
            'type': 'OBJECT',
            'properties': {
                'uid': {'type': 'STRING', 'description': 'Subject Name'},
                'age_estimate': {'type': 'STRING'},
                'archetype_anchor': {
                    'type': 'STRING',
                    'description': "Broad category only (e.g. 'Young woman, commercial model aesthetic')",
                },
                'facial_description': {'type': 'STRING', 'description': 'MUST BE EMPTY STRING (SILENT)'},
                'body_stack': {
                    'type': 'STRING',
                    'description': 'High density anatomical description: Somatotype, Bust, Waist, Hips, Glutes, Limbs.',
                },
                'realism_stack': {
                    'type': 'STRING',
                    'description': 'Camera physics tags: subsurface scattering, skin texture, etc.',
                },
            },
            'required': ['uid', 'archetype_anchor', 'facial_description', 'body_stack', 'realism_stack'],
        },
    },
    'required': ['identity_profile'],
}

SANITIZE_DIRECTIVE = '''Rewrite the image prompt below so it complies with standard content policies.
Keep the subject, pose, wardrobe category, setting, lighting and composition.
Replace any flagged or explicit wording with neutral, policy-safe equivalents.
Return only the rewritten prompt text, with no commentary.

PROMPT:
'''


# ============================================================================
# Response Schemas
# ============================================================================

def _string(description: Optional[str] = None) -> dict[str, Any]:
    node: dict[str, Any] = {'type': 'STRING'}
    if description:
        node['description'] = description
    return node


def _object(properties: dict[str, Any], required: Optional[list[str]] = None) -> dict[str, Any]:
    node: dict[str, Any] = {'type': 'OBJECT', 'properties': properties}
    if required:
        node['required'] = required
    return node


COMPILED_ITEM_SCHEMA = _object(
    {
        'generation_data': _object(
            {
                'reference_logic': _object({
                    'primary_ref': _string(),
                    'secondary_ref': _string(),
                }),
                'final_prompt_string': _string('The assembled dense prompt string'),
                'setting': _string('Short location phrase'),
            },
            required=['final_prompt_string'],
        ),
        'tags': {'type': 'ARRAY', 'items': _string()},
    },
    required=['generation_data'],
)

RICH_ITEM_SCHEMA = _object(
    {
        'meta': _object({
            'medium': _string(),
            'visual_fidelity': _string(),
        }),
        'atmosphere_and_context': _object({
            'mood': _string(),
            'lighting_source': _string(),
            'shadow_play': _string(),
        }),
        'subject_core': _object({
            'identity': _string(),
            'styling': _string(),
        }),
        'anatomical_details': _object({
            'posture_and_spine': _string(),
            'limb_placement': _string(),
            'hands_and_fingers': _string(),
            'head_and_gaze': _string(),
            'facial_expression': _string(),
        }),
        'attire_mechanics': _object({
            'garments': _string(),
            'fit_and_physics': _string(),
        }),
        'environment_and_depth': _object({
            'background_elements': _string(),
            'surface_interactions': _string(),
        }),
        'image_texture': _object({
            'quality_defects': _string(),
            'camera_characteristics': _string(),
        }),
        'background': _object({
            'setting': _string('Short location phrase'),
        }),
        'tags': {'type': 'ARRAY', 'items': _string()},
    },
    required=['subject_core', 'environment_and_depth', 'background'],
)


def _is_facial_key(key: str) -> bool:
    return any(part.startswith(token) for part in key.lower().split('_') for token in FACIAL_FIELD_TOKENS)


def strip_facial_fields(schema: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of schema without any property that can encode facial structure.

    ``head_and_gaze`` becomes ``head_orientation`` (angle only) and
    ``subject_core.identity`` is restricted to a broad archetype.
    """
    schema = copy.deepcopy(schema)

    def _strip(node: dict[str, Any]) -> None:
        properties = node.get('properties')
        if isinstance(properties, dict):
            if 'head_and_gaze' in properties:
                properties['head_orientation'] = _string('Head angle and tilt only. No facial features.')
            if 'identity' in properties:
                properties['identity'] = _string('Broad archetype only. No facial features.')
            for key in [k for k in properties if _is_facial_key(k)]:
                del properties[key]
            if 'required' in node:
                node['required'] = [k for k in node['required'] if k in properties]
            for child in properties.values():
                if isinstance(child, dict):
                    _strip(child)
        items = node.get('items')
        if isinstance(items, dict):
            _strip(items)

    _strip(schema)
    return schema


def schema_has_facial_fields(schema: dict[str, Any]) -> bool:
    """True if any property key anywhere in the schema is facial."""
    properties = schema.get('properties') or {}
    for key, child in properties.items():
        if _is_facial_key(key):
            return True
        if isinstance(child, dict) and schema_has_facial_fields(child):
            return True
    items = schema.get('items')
    return isinstance(items, dict) and schema_has_facial_fields(items)


def build_response_schema(style: str, identity_locked: bool) -> dict[str, Any]:
    """Array schema for the generator response."""
    item = COMPILED_ITEM_SCHEMA if style == STYLE_VACUUM_COMPILER else RICH_ITEM_SCHEMA
    schema = {'type': 'ARRAY', 'items': copy.deepcopy(item)}
    if identity_locked:
        schema = strip_facial_fields(schema)
    return schema


# ============================================================================
# Directive Assembly
# ============================================================================

@dataclass
class DirectiveRequest:
    """Inputs to assemble_directive.

    Attributes:
        slots: Manifest slots for this batch (non-empty).
        task_type: lora, product, generic or ugc.
        identity: Current subject profile.
        safety_mode: sfw or nsfw wardrobe policy.
        ugc_settings: Platform/aesthetic settings for social modes.
        product_images: Product photos as data URLs.
        subject_images: Subject reference photos as data URLs.
        avoid_settings: Repetition window (already truncated).
    """
    slots: list[ManifestSlot]
    task_type: str
    identity: IdentityProfile = field(default_factory=IdentityProfile)
    safety_mode: str = 'sfw'
    ugc_settings: Optional[UGCSettings] = None
    product_images: list[str] = field(default_factory=list)
    subject_images: list[str] = field(default_factory=list)
    avoid_settings: list[str] = field(default_factory=list)


@dataclass
class Directive:
    """Outbound payload for one prompt-generation call."""
    text: str
    schema: dict[str, Any]
    images: list[ReferenceImage]
    style: str
    response_shape: str
    expected_count: int
    identity_locked: bool = False


def select_style(task_type: str, aesthetic: Optional[str] = None) -> str:
    """Pick the generation style ruleset for a task type."""
    if task_type in (TASK_LORA, TASK_PRODUCT):
        return STYLE_VACUUM_COMPILER
    if task_type in (TASK_GENERIC, TASK_UGC):
        return STYLE_RICH_POLISHED if aesthetic == AESTHETIC_POLISHED else STYLE_RICH_CANDID
    raise ValueError(f'Unknown task type: {task_type}')


def wardrobe_policy(safety_mode: str, task_type: str) -> str:
    """Natural-language wardrobe rules for the safety mode."""
    if safety_mode not in SAFETY_MODES:
        raise ValueError(f'Unknown safety mode: {safety_mode}')
    if safety_mode == SAFETY_NSFW and task_type != TASK_GENERIC:
        return WARDROBE_FORM_ACCENTUATING
    return WARDROBE_MODEST


def repetition_clause(avoid_settings: list[str]) -> str:
    """Anti-repetition instruction, empty when there is nothing to avoid."""
    if not avoid_settings:
        return ''
    return f'AVOID SETTINGS: [{", ".join(avoid_settings)}]. Invent NEW locations.'


def ordering_contract(count: int) -> str:
    return (
        f'ORDERING CONTRACT: Return a JSON array of exactly {count} elements. '
        f'Element N of the array MUST correspond to Item N of the MANIFEST '
        f'(element 1 = Item 1, ..., element {count} = Item {count}). '
        'Array position is the only link between manifest and output; do not reorder, '
        'skip, merge or add items.'
    )


def is_identity_locked(task_type: str, subject_images: list[str]) -> bool:
    """Identity datasets, and any mode with a subject reference image, keep faces silent."""
    return task_type == TASK_LORA or bool(subject_images)


def _attach_images(request: DirectiveRequest) -> list[ReferenceImage]:
    images = []
    sources = []
    if request.task_type == TASK_PRODUCT:
        sources.extend(request.product_images)
    if is_identity_locked(request.task_type, request.subject_images):
        sources.extend(request.subject_images)
    for data_url in sources:
        if data_url:
            images.append(parse_data_url(to_data_url(data_url)))
    return images


def _output_template(style: str) -> str:
    if style == STYLE_VACUUM_COMPILER:
        return '''OUTPUT TEMPLATE PER ITEM:
{
  "generation_data": {
    "reference_logic": {
      "primary_ref": "Headshot (0.8)",
      "secondary_ref": "Full Body (0.8)"
    },
    "final_prompt_string": "[THE ASSEMBLED STRING]",
    "setting": "[SHORT LOCATION PHRASE]"
  },
  "tags": ["..."]
}'''
    return '''OUTPUT TEMPLATE PER ITEM:
A VisionStruct object with the fields of the response schema, plus
"background": {"setting": "[SHORT LOCATION PHRASE]"} and "tags": ["..."].'''


def assemble_directive(request: DirectiveRequest) -> Directive:
    """Build the instruction payload and response schema for one batch.

    Args:
        request: Batch slots plus identity, policy and memory inputs.

    Returns:
        Directive ready for the prompt-generation collaborator.

    Raises:
        ValueError: If the request has no slots or names an unknown mode.
    """
    if not request.slots:
        raise ValueError('Cannot assemble a directive for an empty manifest')
    if request.task_type not in TASK_TYPES:
        raise ValueError(f'Unknown task type: {request.task_type}')

    ugc = request.ugc_settings or UGCSettings()
    style = select_style(request.task_type, ugc.aesthetic)
    identity_locked = is_identity_locked(request.task_type, request.subject_images)
    count = len(request.slots)
    identity = request.identity

    sections = []
    if identity_locked:
        sections.append(IDENTITY_LOCK_RULES)
    sections.append(STYLE_RULES[style])

    input_lines = [
        'INPUT DATA:',
        f'ARCHETYPE: {identity.archetype or DEFAULT_ARCHETYPE}',
        f'BODY_STACK: {identity.body_description}',
        f'REALISM_STACK: {identity.realism_text or DEFAULT_REALISM_STACK}',
    ]
    if request.task_type in (TASK_UGC, TASK_GENERIC):
        input_lines.append(f'PLATFORM: {PLATFORM_NOTES[ugc.platform]}')
        if ugc.custom_instruction.strip():
            input_lines.append(f'CUSTOM INSTRUCTION: {ugc.custom_instruction.strip()}')
    sections.append('\n'.join(input_lines))

    sections.append(wardrobe_policy(request.safety_mode, request.task_type))
    if request.task_type == TASK_PRODUCT and request.product_images:
        sections.append(PRODUCT_DIRECTIVE)
    if clause := repetition_clause(request.avoid_settings):
        sections.append(clause)

    sections.append(f'TASK: Generate exactly {count} JSON prompts following this MANIFEST:\n'
                    f'{format_manifest(request.slots)}')
    sections.append(ordering_contract(count))
    sections.append(_output_template(style))

    rules = ['CRITICAL RULES:']
    if identity_locked:
        rules.append('- NO FACIAL FEATURES anywhere in the output.')
    rules.append('- USE DENSE TOKEN format.' if style == STYLE_VACUUM_COMPILER else '- Fill every field concretely.')
    rules.append('- UNIQUE OUTFITS and UNIQUE SETTINGS per item.')
    sections.append('\n'.join(rules))
    sections.append('Return a JSON array of these objects.')

    images = _attach_images(request)
    directive = Directive(
        text='\n\n'.join(sections),
        schema=build_response_schema(style, identity_locked),
        images=images,
        style=style,
        response_shape=SHAPE_FLAT if style == STYLE_VACUUM_COMPILER else SHAPE_RICH,
        expected_count=count,
        identity_locked=identity_locked,
    )
    logger.debug(f'Assembled {style} directive for {count} item(s), {len(images)} image(s), '
                 f'{len(request.avoid_settings)} avoided setting(s)')
    return directive
