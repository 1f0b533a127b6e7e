"""
enhancement.py
==============
AI enhancement pipeline for approved encounters.

An enhancement run rewrites the original story with a generative text model,
derives a short visual prompt from the result, renders one illustration with
a generative image model, stores the image and finally marks the encounter
``enhanced``.  Any failure after the local retries marks it
``enhancement_failed`` with the error message.

Both models sit behind an opaque HTTP contract::

    POST {GHOSTATLAS_GENERATIVE_URL}/model/{model_id}/invoke
    Authorization: Bearer {GHOSTATLAS_GENERATIVE_API_KEY}

Text requests use the messages/inferenceConfig body and answer with
``output.message.content[0].text``; image requests use the TEXT_IMAGE body
and answer with ``images[0]`` as base64.
"""

import base64
import binascii
import logging
import os
import random
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from api_client import RetryPolicy
from ghostatlas.models import EncounterStatus, can_transition

logger = logging.getLogger('ghostatlas.enhancement')

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TEXT_MODEL_ID = 'amazon.nova-pro-v1:0'
IMAGE_MODEL_ID = 'amazon.titan-image-generator-v2:0'
_TEXT_TIMEOUT = 60   # seconds
_IMAGE_TIMEOUT = 40  # seconds
MAX_STORY_CHARS = 10000
MAX_IMAGE_PROMPT_CHARS = 512
MAX_SCENE_CHARS = 200
NEGATIVE_PROMPT = 'cartoon, anime, bright colors, cheerful, low quality, text, watermark, signature'

# Two local retries after the first attempt, waiting 1 s then 2 s.
GENERATION_RETRY_POLICY = RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=2.0)

_VISUAL_KEYWORDS = (
    'dark', 'shadow', 'light', 'night', 'fog', 'mist', 'room', 'door',
    'window', 'figure', 'silhouette', 'appeared', 'saw', 'looked',
    'stood', 'walked', 'house', 'building', 'forest', 'road', 'path',
)

# (address keywords, location phrase), first match wins.
_LOCATION_TYPES = (
    (('house', 'home'), 'an old house'),
    (('building', 'apartment'), 'an abandoned building'),
    (('road', 'street', 'highway'), 'a dark road'),
    (('forest', 'woods'), 'a dark forest'),
    (('cemetery', 'graveyard'), 'a cemetery'),
    (('church', 'chapel'), 'an old church'),
    (('hospital',), 'an abandoned hospital'),
    (('school',), 'an empty school'),
    (('park',), 'a dark park'),
    (('bridge',), 'a foggy bridge'),
    (('tunnel',), 'a dark tunnel'),
    (('basement', 'cellar'), 'a dark basement'),
    (('attic',), 'a dusty attic'),
)

_SETTING_ELEMENTS = (
    (('door',), 'ominous doorway'),
    (('window',), 'dark windows'),
    (('stairs', 'staircase'), 'creaking stairs'),
    (('mirror',), 'eerie mirror'),
)


class GenerativeAIError(Exception):
    """Raised when a generative model call fails or returns an unusable body."""


class StorageError(Exception):
    """Raised when generated media cannot be written."""


# ---------------------------------------------------------------------------
# Prompt shaping
# ---------------------------------------------------------------------------

def build_narrative_prompt(original_story: str, location: Dict[str, Any],
                           encounter_time: str) -> str:
    """Build the editor prompt for the text model.

    Only the street address is passed on; coordinates never reach the model.
    """
    address = (location or {}).get('address')
    location_context = (f'Location context: {address}' if address
                        else 'Location context: (location details omitted)')
    return f"""You are an expert editor specializing in paranormal narratives. Your job is to enhance the user's story while preserving their exact sequence of events, structure, and personal voice.

Original Story:
{original_story}

{location_context}
Time: {encounter_time}

CRITICAL REQUIREMENTS:
- PRESERVE the user's exact story structure and flow - do NOT reorganize or reframe how they tell it
- KEEP their opening exactly as they wrote it - do NOT create a new beginning
- MAINTAIN all factual details, names, events, and descriptions exactly as provided
- If the story is brief or basic, expand it naturally by adding atmospheric details that fit their narrative
- DO NOT add new plot points, characters, or events that weren't in the original
- DO NOT include GPS coordinates or numeric location data

ENHANCEMENT GUIDELINES:
- Improve sentence flow and readability where needed
- Add sensory details (sounds, smells, textures, visual atmosphere) that enhance existing moments
- Deepen the emotional impact and tension of moments they already described
- Use more evocative and vivid language while keeping their voice
- Add subtle horror atmosphere (shadows, silence, unease) without changing what happened
- If they wrote 2 sentences, expand to a paragraph; if they wrote 3 paragraphs, expand to 5-8 paragraphs
- Target length: 500-2000 words depending on original length

TONE: Keep it authentic to their experience - spooky and atmospheric, but grounded in their reality.

Enhanced Story:"""


def extract_scene(story: str) -> str:
    """Pick up to three visually descriptive sentences, cut to 200 characters."""
    sentences = [s.strip() for s in re.split(r'[.!?]+', story or '')]
    sentences = [s for s in sentences if len(s) > 20]
    if not sentences:
        return 'A dark, mysterious paranormal encounter'

    visual = [s for s in sentences if any(k in s.lower() for k in _VISUAL_KEYWORDS)]
    scene = '. '.join((visual or sentences)[:3])
    if len(scene) > MAX_SCENE_CHARS:
        scene = scene[:MAX_SCENE_CHARS]
        last_space = scene.rfind(' ')
        if last_space > 150:
            scene = scene[:last_space]
    return scene


def extract_location_type(address: Optional[str]) -> str:
    if not address:
        return 'mysterious location'
    lower = address.lower()
    for keywords, phrase in _LOCATION_TYPES:
        if any(k in lower for k in keywords):
            return phrase
    return 'a mysterious location'


def extract_visual_elements(scene: str) -> str:
    """Map scene text to at most three short visual phrases."""
    lower = scene.lower()
    elements = []
    if 'figure' in lower or 'silhouette' in lower or 'shadow' in lower:
        elements.append('shadowy figure')
    elif 'woman' in lower or 'lady' in lower:
        elements.append('ghostly woman')
    elif 'man' in lower or 'person' in lower:
        elements.append('mysterious figure')
    elif 'child' in lower or 'kid' in lower:
        elements.append('ghostly child')

    if 'fog' in lower or 'mist' in lower:
        elements.append('thick fog')
    if 'dark' in lower:
        elements.append('deep darkness')
    if 'light' in lower and ('flicker' in lower or 'dim' in lower):
        elements.append('flickering lights')
    for keywords, phrase in _SETTING_ELEMENTS:
        if any(k in lower for k in keywords):
            elements.append(phrase)

    if elements:
        return ', '.join(elements[:3])
    return 'eerie paranormal presence, dark shadows, unsettling atmosphere'


def build_scene_prompt(scene: str, location: Dict[str, Any]) -> str:
    """Build the image prompt; never longer than 512 characters."""
    place = extract_location_type((location or {}).get('address'))
    elements = extract_visual_elements(scene)
    prompt = (f'Dark atmospheric horror scene: {elements} at {place}. Cinematic lighting, '
              'dramatic shadows, eerie fog, mysterious atmosphere, photorealistic style, '
              'high detail, moody aesthetic, haunting composition.')
    if len(prompt) <= MAX_IMAGE_PROMPT_CHARS:
        return prompt
    simple = (f'Horror scene: {elements[:100]} at {place}. Dark, cinematic lighting, '
              'dramatic shadows, mysterious atmosphere, photorealistic, high detail.')
    return simple[:MAX_IMAGE_PROMPT_CHARS]


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------

class GenerativeClient:
    """Minimal client for the generative model invoke endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        text_model: str = TEXT_MODEL_ID,
        image_model: str = IMAGE_MODEL_ID,
        text_timeout: float = _TEXT_TIMEOUT,
        image_timeout: float = _IMAGE_TIMEOUT,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must not be empty")
        self._base_url = base_url.rstrip('/')
        self._session = session or requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })
        if api_key:
            self._session.headers['Authorization'] = f'Bearer {api_key}'
        self.text_model = text_model
        self.image_model = image_model
        self._text_timeout = text_timeout
        self._image_timeout = image_timeout

    def invoke(self, model_id: str, body: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """POST *body* to the model and return the decoded JSON response.

        Raises:
            GenerativeAIError: On network failure, timeout, non-2xx status or
                a body that is not a JSON object.
        """
        url = f'{self._base_url}/model/{model_id}/invoke'
        try:
            resp = self._session.post(url, json=body, timeout=timeout)
            resp.raise_for_status()
        except requests.Timeout as exc:
            raise GenerativeAIError(
                f"{model_id} invocation timed out after {timeout}s") from exc
        except requests.HTTPError as exc:
            raise GenerativeAIError(
                f"{model_id} returned {resp.status_code}: {resp.text[:200]}") from exc
        except requests.RequestException as exc:
            raise GenerativeAIError(f"Network error calling {model_id}: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError as exc:
            raise GenerativeAIError(f"{model_id} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GenerativeAIError(f"{model_id} returned an unexpected body")
        return payload

    def generate_text(self, prompt: str) -> str:
        body = {
            'messages': [{'role': 'user', 'content': [{'text': prompt}]}],
            'inferenceConfig': {'max_new_tokens': 4096, 'temperature': 0.7, 'top_p': 0.9},
        }
        payload = self.invoke(self.text_model, body, self._text_timeout)
        try:
            text = payload['output']['message']['content'][0]['text']
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerativeAIError('Invalid response format from text model') from exc
        if not isinstance(text, str):
            raise GenerativeAIError('Invalid response format from text model')
        return text

    def generate_image(self, prompt: str, seed: int) -> bytes:
        body = {
            'taskType': 'TEXT_IMAGE',
            'textToImageParams': {'text': prompt, 'negativeText': NEGATIVE_PROMPT},
            'imageGenerationConfig': {
                'numberOfImages': 1,
                'quality': 'premium',
                'height': 1024,
                'width': 1024,
                'cfgScale': 7.0,
                'seed': seed,
            },
        }
        payload = self.invoke(self.image_model, body, self._image_timeout)
        images = payload.get('images')
        if not isinstance(images, list) or not images or not images[0]:
            raise GenerativeAIError('No image data in response')
        try:
            return base64.b64decode(images[0], validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise GenerativeAIError('Image data is not valid base64') from exc


# ---------------------------------------------------------------------------
# Media storage
# ---------------------------------------------------------------------------

class MediaStorage:
    """Stores media files under *root* and maps them to public URLs."""

    def __init__(self, root: str, public_url: str) -> None:
        self.root = os.path.abspath(root)
        self.public_url = public_url.rstrip('/')

    def path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root:
            raise StorageError(f"Refusing to store outside media root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f'{self.public_url}/media/{key}'

    def save(self, key: str, data: bytes) -> str:
        """Write *data* under *key* and return its public URL."""
        path = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Could not store {key}: {exc}") from exc
        return self.url_for(key)


# ---------------------------------------------------------------------------
# Generation steps
# ---------------------------------------------------------------------------

def _with_retries(label: str, attempt: Callable[[], Any], policy: RetryPolicy,
                  sleep: Callable[[float], None]) -> Any:
    last_error: Optional[Exception] = None
    for retry_number in range(policy.max_retries + 1):
        if retry_number:
            sleep(policy.delay_for(retry_number))
        try:
            return attempt()
        except (GenerativeAIError, StorageError) as exc:
            last_error = exc
            logger.warning("%s attempt %d failed: %s", label, retry_number + 1, exc)
    raise GenerativeAIError(
        f"Failed to generate {label} after {policy.max_retries + 1} attempts: {last_error}")


@dataclass
class EnhancementJob:
    """One queued enhancement run."""

    encounter_id: str
    original_story: str
    location: Dict[str, Any]
    encounter_time: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> 'EnhancementJob':
        if not message.get('encounterId') or not message.get('originalStory') \
                or not message.get('location'):
            raise ValueError('Invalid enhancement message: missing required fields')
        known = {'encounterId', 'originalStory', 'location', 'encounterTime'}
        return cls(
            encounter_id=message['encounterId'],
            original_story=message['originalStory'],
            location=message['location'],
            encounter_time=message.get('encounterTime', ''),
            extra={k: v for k, v in message.items() if k not in known},
        )


def generate_narrative(client: GenerativeClient, job: EnhancementJob,
                       policy: RetryPolicy = GENERATION_RETRY_POLICY,
                       sleep: Callable[[float], None] = time.sleep) -> str:
    """Return the enhanced story (at most 10 000 characters)."""
    prompt = build_narrative_prompt(job.original_story, job.location, job.encounter_time)

    def attempt() -> str:
        text = client.generate_text(prompt)
        if not text.strip():
            raise GenerativeAIError('Generated narrative is empty')
        return text[:MAX_STORY_CHARS]

    return _with_retries('narrative', attempt, policy, sleep)


def generate_illustration(client: GenerativeClient, storage: MediaStorage,
                          encounter_id: str, story: str, location: Dict[str, Any],
                          policy: RetryPolicy = GENERATION_RETRY_POLICY,
                          sleep: Callable[[float], None] = time.sleep,
                          seed: Optional[int] = None) -> List[str]:
    """Render and store one illustration; return its URL in a list."""
    prompt = build_scene_prompt(extract_scene(story), location)
    if seed is None:
        seed = random.randrange(0, 4294967295)
    key = f'encounters/{encounter_id}/illustrations/0.png'

    def attempt() -> str:
        return storage.save(key, client.generate_image(prompt, seed))

    logger.debug("Illustration prompt for %s (%d chars): %s", encounter_id, len(prompt), prompt)
    return [_with_retries('illustration', attempt, policy, sleep)]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class EnhancementPipeline:
    """Runs the enhancement steps for one encounter and records the outcome.

    Each run opens its own database session from ``db_module.SessionLocal``.
    Without a *client* every run fails and marks the encounter
    ``enhancement_failed``.
    """

    def __init__(self, db_module, client: Optional[GenerativeClient], storage: MediaStorage,
                 retry_policy: RetryPolicy = GENERATION_RETRY_POLICY,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self._db = db_module
        self._client = client
        self._storage = storage
        self._policy = retry_policy
        self._sleep = sleep

    def process(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Enhance the encounter described by *message*.

        Returns:
            The updated encounter dict, or ``None`` when the encounter no
            longer exists or is not in a state that can be enhanced.

        Raises:
            Exception: whatever made the run fail, after the encounter has
                been marked ``enhancement_failed``.
        """
        job = EnhancementJob.from_message(message)
        db = self._db.SessionLocal()
        try:
            encounter = self._db.get_encounter(db, job.encounter_id)
            if encounter is None:
                logger.warning("Skipping enhancement of missing encounter %s", job.encounter_id)
                return None
            if encounter.status != EncounterStatus.ENHANCING.value:
                if not can_transition(encounter.status, EncounterStatus.ENHANCING.value):
                    logger.warning("Skipping enhancement of %s in status %s",
                                   job.encounter_id, encounter.status)
                    return None
                self._db.update_encounter(db, encounter, status=EncounterStatus.ENHANCING.value)

            logger.info("Enhancing encounter %s", job.encounter_id)
            try:
                if self._client is None:
                    raise GenerativeAIError('Generative service is not configured')
                story = generate_narrative(self._client, job, self._policy, self._sleep)
                illustrations = generate_illustration(
                    self._client, self._storage, job.encounter_id, story, job.location,
                    self._policy, self._sleep)
            except Exception as exc:
                logger.error("Enhancement of %s failed: %s", job.encounter_id, exc)
                self._db.update_encounter(db, encounter,
                                          status=EncounterStatus.ENHANCEMENT_FAILED.value,
                                          error_message=str(exc)[:1000])
                raise

            self._db.update_encounter(
                db, encounter,
                enhanced_story=story,
                illustration_urls=illustrations,
                status=EncounterStatus.ENHANCED.value,
                error_message=None,
            )
            logger.info("Encounter %s enhanced (%d chars, %d illustration(s))",
                        job.encounter_id, len(story), len(illustrations))
            return self._db.encounter_to_dict(encounter)
        finally:
            db.close()


class EnhancementQueue:
    """Single-worker queue feeding :class:`EnhancementPipeline`.

    Messages are processed one at a time in submission order.  A failed run
    is logged and left in ``enhancement_failed``; it is never retried
    automatically.
    """

    def __init__(self, pipeline: EnhancementPipeline) -> None:
        self._pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=1,
                                            thread_name_prefix='ghostatlas-enhance')
        self._lock = threading.Lock()
        self._pending = 0

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, message: Dict[str, Any]) -> Future:
        with self._lock:
            self._pending += 1
        logger.debug("Queued enhancement for %s", message.get('encounterId'))
        return self._executor.submit(self._run, message)

    def _run(self, message: Dict[str, Any]):
        try:
            return self._pipeline.process(message)
        except Exception:
            logger.exception("Enhancement job for %s failed", message.get('encounterId'))
            return None
        finally:
            with self._lock:
                self._pending -= 1

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
