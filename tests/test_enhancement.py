#!/usr/bin/env python3
"""
Tests for enhancement.py: prompt shaping, the model client and the pipeline.

Run with:
    python -m pytest tests/test_enhancement.py
"""
import base64
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from enhancement import (EnhancementJob, EnhancementPipeline, EnhancementQueue,
                         GenerativeAIError, GenerativeClient, MediaStorage, StorageError,
                         build_narrative_prompt, build_scene_prompt, extract_location_type,
                         extract_scene, extract_visual_elements, generate_illustration,
                         generate_narrative)

STORY = ('It was late at night when I walked past the old house on Mill Lane. '
         'A dark figure stood in the upstairs window and watched me. '
         'The lights flickered and a thick fog rolled across the road. '
         'I ran home and never went back.')

MESSAGE = {
    'encounterId': 'e1',
    'originalStory': STORY,
    'location': {'latitude': 40.0, 'longitude': -74.0, 'address': '12 Mill Lane'},
    'encounterTime': '2024-10-31T23:30:00Z',
}


def _make_response(body, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.text = str(body)
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
    else:
        resp.raise_for_status.return_value = None
    return resp


# ===========================================================================
# Prompt shaping
# ===========================================================================

class TestNarrativePrompt(unittest.TestCase):

    def test_includes_story_address_and_time(self):
        prompt = build_narrative_prompt(STORY, MESSAGE['location'], MESSAGE['encounterTime'])
        self.assertIn(STORY, prompt)
        self.assertIn('Location context: 12 Mill Lane', prompt)
        self.assertIn('Time: 2024-10-31T23:30:00Z', prompt)
        self.assertTrue(prompt.endswith('Enhanced Story:'))

    def test_never_includes_coordinates(self):
        prompt = build_narrative_prompt('A story', {'latitude': 40.123, 'longitude': -74.456},
                                        '2024-01-01T00:00:00Z')
        self.assertIn('(location details omitted)', prompt)
        self.assertNotIn('40.123', prompt)
        self.assertNotIn('-74.456', prompt)


class TestSceneExtraction(unittest.TestCase):

    def test_prefers_visual_sentences(self):
        scene = extract_scene('I felt uneasy all day long and could not sleep. '
                              'Then a shadow moved across the hallway.')
        self.assertEqual(scene, 'Then a shadow moved across the hallway')

    def test_fallback_for_short_text(self):
        self.assertEqual(extract_scene('Boo! Eek.'), 'A dark, mysterious paranormal encounter')

    def test_truncated_to_200_chars(self):
        scene = extract_scene(STORY * 5)
        self.assertLessEqual(len(scene), 200)
        self.assertFalse(scene.endswith(' '))

    def test_location_types(self):
        self.assertEqual(extract_location_type('12 Mill Lane House'), 'an old house')
        self.assertEqual(extract_location_type('St Mary Cemetery'), 'a cemetery')
        self.assertEqual(extract_location_type('Old Bridge Tunnel'), 'a foggy bridge')
        self.assertEqual(extract_location_type('Somewhere'), 'a mysterious location')
        self.assertEqual(extract_location_type(None), 'mysterious location')

    def test_visual_elements_capped_at_three(self):
        elements = extract_visual_elements('A shadow in the fog, a dark door and a mirror')
        self.assertEqual(elements, 'shadowy figure, thick fog, deep darkness')

    def test_visual_elements_fallback(self):
        self.assertEqual(extract_visual_elements('nothing to see'),
                         'eerie paranormal presence, dark shadows, unsettling atmosphere')

    def test_flickering_lights_need_flicker(self):
        self.assertEqual(extract_visual_elements('the light dimmed'), 'flickering lights')
        self.assertEqual(extract_visual_elements('bright light'),
                         'eerie paranormal presence, dark shadows, unsettling atmosphere')


class TestScenePrompt(unittest.TestCase):

    def test_prompt_shape(self):
        prompt = build_scene_prompt(extract_scene(STORY), MESSAGE['location'])
        self.assertTrue(prompt.startswith('Dark atmospheric horror scene: '))
        self.assertIn('at a mysterious location', prompt)
        self.assertLessEqual(len(prompt), 512)

    def test_long_address_stays_within_limit(self):
        prompt = build_scene_prompt('dark figure', {'address': 'x' * 2000})
        self.assertLessEqual(len(prompt), 512)


# ===========================================================================
# GenerativeClient
# ===========================================================================

class TestGenerativeClient(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.client = GenerativeClient('http://models.test/', api_key='key',
                                       session=self.session)

    def test_generate_text(self):
        self.session.post.return_value = _make_response(
            {'output': {'message': {'content': [{'text': 'An enhanced tale'}]}}})
        self.assertEqual(self.client.generate_text('prompt'), 'An enhanced tale')
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], 'http://models.test/model/amazon.nova-pro-v1:0/invoke')
        self.assertEqual(kwargs['timeout'], 60)
        self.assertEqual(kwargs['json']['messages'][0]['content'][0]['text'], 'prompt')
        self.assertEqual(kwargs['json']['inferenceConfig']['max_new_tokens'], 4096)

    def test_text_bad_format(self):
        self.session.post.return_value = _make_response({'output': {}})
        with self.assertRaises(GenerativeAIError):
            self.client.generate_text('prompt')

    def test_generate_image(self):
        payload = base64.b64encode(b'png-bytes').decode('ascii')
        self.session.post.return_value = _make_response({'images': [payload]})
        self.assertEqual(self.client.generate_image('prompt', seed=7), b'png-bytes')
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0],
                         'http://models.test/model/amazon.titan-image-generator-v2:0/invoke')
        self.assertEqual(kwargs['timeout'], 40)
        config = kwargs['json']['imageGenerationConfig']
        self.assertEqual((config['width'], config['height'], config['seed']), (1024, 1024, 7))

    def test_image_missing(self):
        self.session.post.return_value = _make_response({'images': []})
        with self.assertRaises(GenerativeAIError):
            self.client.generate_image('prompt', seed=1)

    def test_http_error(self):
        self.session.post.return_value = _make_response({'message': 'throttled'}, status=429)
        with self.assertRaises(GenerativeAIError):
            self.client.generate_text('prompt')

    def test_timeout(self):
        self.session.post.side_effect = requests.Timeout('slow')
        with self.assertRaises(GenerativeAIError) as ctx:
            self.client.generate_text('prompt')
        self.assertIn('timed out', str(ctx.exception))


# ===========================================================================
# Generation steps
# ===========================================================================

class TmpMediaMixin(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.storage = MediaStorage(self.tmp, 'http://media.test')

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)


class TestGenerationSteps(TmpMediaMixin):

    def test_narrative_retries_then_succeeds(self):
        client = MagicMock()
        client.generate_text.side_effect = [GenerativeAIError('busy'), '   ', 'Enhanced']
        sleeps = []
        job = EnhancementJob.from_message(MESSAGE)
        self.assertEqual(generate_narrative(client, job, sleep=sleeps.append), 'Enhanced')
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_narrative_gives_up_after_three_attempts(self):
        client = MagicMock()
        client.generate_text.side_effect = GenerativeAIError('down')
        with self.assertRaises(GenerativeAIError) as ctx:
            generate_narrative(client, EnhancementJob.from_message(MESSAGE),
                               sleep=lambda s: None)
        self.assertIn('after 3 attempts', str(ctx.exception))
        self.assertEqual(client.generate_text.call_count, 3)

    def test_narrative_truncated(self):
        client = MagicMock()
        client.generate_text.return_value = 'x' * 12000
        story = generate_narrative(client, EnhancementJob.from_message(MESSAGE))
        self.assertEqual(len(story), 10000)

    def test_illustration_stored(self):
        client = MagicMock()
        client.generate_image.return_value = b'png'
        urls = generate_illustration(client, self.storage, 'e1', STORY, MESSAGE['location'],
                                     seed=3)
        self.assertEqual(urls, ['http://media.test/media/encounters/e1/illustrations/0.png'])
        with open(os.path.join(self.tmp, 'encounters', 'e1', 'illustrations', '0.png'),
                  'rb') as fh:
            self.assertEqual(fh.read(), b'png')
        prompt, seed = client.generate_image.call_args[0]
        self.assertLessEqual(len(prompt), 512)
        self.assertEqual(seed, 3)

    def test_storage_refuses_escape(self):
        with self.assertRaises(StorageError):
            self.storage.save('../outside.png', b'x')

    def test_job_requires_fields(self):
        with self.assertRaises(ValueError):
            EnhancementJob.from_message({'encounterId': 'e1'})


# ===========================================================================
# Pipeline
# ===========================================================================

class TestPipeline(TmpMediaMixin):

    def setUp(self):
        super().setUp()
        database.configure('sqlite://')
        database.init_db()
        db = database.SessionLocal()
        try:
            encounter = database.create_encounter(
                db, 'e1', 'Sam', 40.0, -74.0, STORY, '2024-10-31T23:30:00Z',
                address='12 Mill Lane')
            database.update_encounter(db, encounter, status='approved')
        finally:
            db.close()
        self.client = MagicMock()
        self.client.generate_text.return_value = 'An enhanced tale of the old house.'
        self.client.generate_image.return_value = b'png'

    def tearDown(self):
        database.Base.metadata.drop_all(bind=database.engine)
        super().tearDown()

    def _pipeline(self, client='default'):
        client = self.client if client == 'default' else client
        return EnhancementPipeline(database, client, self.storage, sleep=lambda s: None)

    def _row(self):
        db = database.SessionLocal()
        try:
            return database.encounter_to_dict(database.get_encounter(db, 'e1')), \
                database.get_encounter(db, 'e1').error_message
        finally:
            db.close()

    def test_success_marks_enhanced(self):
        result = self._pipeline().process(MESSAGE)
        self.assertEqual(result['status'], 'enhanced')
        stored, error = self._row()
        self.assertEqual(stored['status'], 'enhanced')
        self.assertEqual(stored['enhancedStory'], 'An enhanced tale of the old house.')
        self.assertEqual(stored['illustrationUrls'],
                         ['http://media.test/media/encounters/e1/illustrations/0.png'])
        self.assertIsNone(error)

    def test_failure_marks_enhancement_failed(self):
        self.client.generate_text.side_effect = GenerativeAIError('model unavailable')
        with self.assertRaises(GenerativeAIError):
            self._pipeline().process(MESSAGE)
        stored, error = self._row()
        self.assertEqual(stored['status'], 'enhancement_failed')
        self.assertIn('Failed to generate narrative', error)

    def test_failed_encounter_can_be_retried(self):
        self.client.generate_image.side_effect = [GenerativeAIError('x')] * 3 + [b'png']
        with self.assertRaises(GenerativeAIError):
            self._pipeline().process(MESSAGE)
        self.assertEqual(self._row()[0]['status'], 'enhancement_failed')
        self._pipeline().process(MESSAGE)
        self.assertEqual(self._row()[0]['status'], 'enhanced')

    def test_without_client_fails(self):
        with self.assertRaises(GenerativeAIError):
            self._pipeline(client=None).process(MESSAGE)
        self.assertEqual(self._row()[0]['status'], 'enhancement_failed')

    def test_skips_missing_encounter(self):
        self.assertIsNone(self._pipeline().process(dict(MESSAGE, encounterId='missing')))
        self.client.generate_text.assert_not_called()

    def test_skips_terminal_status(self):
        db = database.SessionLocal()
        try:
            database.update_encounter(db, database.get_encounter(db, 'e1'), status='enhanced')
        finally:
            db.close()
        self.assertIsNone(self._pipeline().process(MESSAGE))
        self.client.generate_text.assert_not_called()


class TestQueue(unittest.TestCase):

    def test_runs_jobs(self):
        pipeline = MagicMock()
        pipeline.process.return_value = {'status': 'enhanced'}
        queue = EnhancementQueue(pipeline)
        try:
            self.assertEqual(queue.submit(MESSAGE).result(2), {'status': 'enhanced'})
            pipeline.process.assert_called_once_with(MESSAGE)
            self.assertEqual(queue.pending, 0)
        finally:
            queue.close()

    def test_failed_job_is_logged_not_raised(self):
        pipeline = MagicMock()
        pipeline.process.side_effect = GenerativeAIError('down')
        queue = EnhancementQueue(pipeline)
        try:
            self.assertIsNone(queue.submit(MESSAGE).result(2))
        finally:
            queue.close()


if __name__ == '__main__':
    unittest.main()
