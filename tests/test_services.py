#!/usr/bin/env python3
"""
Unit tests for the ghostatlas/repositories and ghostatlas/services layer.

Run with:
    python -m pytest tests/test_services.py
"""
import json
import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ghostatlas.errors import ErrorCode, ServiceError, http_status_for
from ghostatlas.models import Encounter, EncounterStatus, can_transition
from ghostatlas.repositories import (ActivityRepository, DeviceRepository,
                                     PreferencesRepository)
from ghostatlas.services import ActivityService, DeviceService, PreferencesService
from ghostatlas.services.encounter_service import decode_page_token, encode_page_token
from ghostatlas.services.verification_service import is_time_matched, parse_timestamp
from ghostatlas.uploads import UploadSigner
from ghostatlas.validation import (is_valid_uuid, sanitize_input,
                                   validate_encounter_submission)


class TmpDirMixin(unittest.TestCase):
    """Creates a fresh temp directory for each test."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.tmp, name)


def _submission(**overrides):
    body = {
        'authorName': 'Sam',
        'location': {'latitude': 40.0, 'longitude': -74.0, 'address': 'Mill Lane'},
        'originalStory': 'I saw a figure at the window.',
        'encounterTime': '2024-10-31T23:30:00Z',
        'imageCount': 2,
    }
    body.update(overrides)
    return body


# ===========================================================================
# Repository tests
# ===========================================================================

class TestDeviceRepository(TmpDirMixin):

    def test_starts_empty(self):
        self.assertIsNone(DeviceRepository(self._path('device.json')).get())

    def test_set_persists(self):
        DeviceRepository(self._path('device.json')).set('abc')
        self.assertEqual(DeviceRepository(self._path('device.json')).get(), 'abc')

    def test_corrupt_file_yields_default(self):
        with open(self._path('device.json'), 'w') as f:
            f.write('{not json')
        self.assertIsNone(DeviceRepository(self._path('device.json')).get())

    def test_wrong_type_yields_default(self):
        with open(self._path('device.json'), 'w') as f:
            json.dump(['a list'], f)
        self.assertIsNone(DeviceRepository(self._path('device.json')).get())

    def test_write_leaves_no_temp_files(self):
        DeviceRepository(self._path('device.json')).set('abc')
        self.assertEqual(os.listdir(self.tmp), ['device.json'])


class TestPreferencesRepository(TmpDirMixin):

    def test_default_volume(self):
        self.assertEqual(PreferencesRepository(self._path('p.json')).get('audioVolume'), 0.7)

    def test_put_persists(self):
        PreferencesRepository(self._path('p.json')).put('audioVolume', 0.2)
        self.assertEqual(PreferencesRepository(self._path('p.json')).get('audioVolume'), 0.2)


class TestActivityRepository(TmpDirMixin):

    def test_records_are_per_device(self):
        repo = ActivityRepository(self._path('a.json'))
        repo.set_rating('dev-1', 'e1', 4)
        self.assertEqual(repo.for_device('dev-2')['ratings'], {})
        reloaded = ActivityRepository(self._path('a.json'))
        self.assertEqual(reloaded.for_device('dev-1')['ratings'], {'e1': 4})


# ===========================================================================
# Service tests
# ===========================================================================

class TestDeviceService(TmpDirMixin):

    def test_initialize_is_idempotent(self):
        service = DeviceService(DeviceRepository(self._path('device.json')))
        first = service.initialize_device_id()
        self.assertEqual(service.initialize_device_id(), first)
        self.assertTrue(is_valid_uuid(first))

    def test_survives_restart(self):
        first = DeviceService(DeviceRepository(self._path('d.json'))).initialize_device_id()
        second = DeviceService(DeviceRepository(self._path('d.json'))).initialize_device_id()
        self.assertEqual(first, second)

    def test_get_before_initialise(self):
        self.assertIsNone(DeviceService(DeviceRepository(self._path('d.json'))).get_device_id())


class TestPreferencesService(TmpDirMixin):

    def _make(self):
        return PreferencesService(PreferencesRepository(self._path('prefs.json')))

    def test_default_volume(self):
        self.assertEqual(self._make().get_audio_volume(), 0.7)

    def test_volume_clamped(self):
        service = self._make()
        self.assertEqual(service.set_audio_volume(1.5), 1.0)
        self.assertEqual(service.get_audio_volume(), 1.0)
        self.assertEqual(service.set_audio_volume(-0.5), 0.0)
        self.assertEqual(service.get_audio_volume(), 0.0)

    def test_in_range_kept(self):
        service = self._make()
        service.set_audio_volume(0.35)
        self.assertEqual(self._make().get_audio_volume(), 0.35)

    def test_get_all(self):
        self.assertEqual(self._make().get_all(), {'audioVolume': 0.7})


class TestActivityService(TmpDirMixin):

    def _make(self, device='dev-1'):
        return ActivityService(ActivityRepository(self._path('activity.json')), device)

    def test_rating_record(self):
        service = self._make()
        self.assertFalse(service.has_rated('e1'))
        service.record_rating('e1', 5)
        self.assertTrue(service.has_rated('e1'))
        self.assertEqual(service.rating_for('e1'), 5)

    def test_profile_counts(self):
        service = self._make()
        service.record_submission('e1', 'Sam', 'A long story ' * 20)
        service.record_rating('e2', 3)
        service.record_verification('e3', 'v1', 4, True, 12.5)
        profile = self._make().profile()
        self.assertEqual(profile['deviceId'], 'dev-1')
        self.assertEqual(profile['submissionCount'], 1)
        self.assertEqual(profile['ratingCount'], 1)
        self.assertEqual(profile['verificationCount'], 1)
        self.assertEqual(len(profile['submissions'][0]['excerpt']), 120)
        self.assertTrue(profile['verifications'][0]['isTimeMatched'])

    def test_devices_do_not_share_records(self):
        self._make('dev-1').record_rating('e1', 5)
        self.assertFalse(self._make('dev-2').has_rated('e1'))


# ===========================================================================
# Validation, errors and models
# ===========================================================================

class TestValidation(unittest.TestCase):

    def test_valid_submission(self):
        self.assertEqual(validate_encounter_submission(_submission()), [])

    def test_missing_fields(self):
        errors = validate_encounter_submission({'authorName': ' '})
        self.assertIn('authorName is required', errors)
        self.assertIn('originalStory is required', errors)

    def test_story_too_long(self):
        errors = validate_encounter_submission(_submission(originalStory='x' * 5001))
        self.assertEqual(errors, ['originalStory must be 5000 characters or less'])

    def test_bad_coordinates(self):
        errors = validate_encounter_submission(
            _submission(location={'latitude': 91, 'longitude': 'east'}))
        self.assertEqual(len(errors), 2)

    def test_too_many_images(self):
        errors = validate_encounter_submission(_submission(imageCount=6))
        self.assertEqual(errors, ['imageCount must be between 0 and 5'])

    def test_device_id_must_be_uuid(self):
        errors = validate_encounter_submission(_submission(deviceId='not-a-uuid'))
        self.assertEqual(errors, ['deviceId must be a valid UUID'])

    def test_sanitize_strips_tags_and_escapes(self):
        self.assertEqual(sanitize_input('<b>Boo</b> & "hi"'), 'Boo &amp; &quot;hi&quot;')
        self.assertEqual(sanitize_input('a\x00b\n'), 'ab')
        self.assertEqual(sanitize_input(None), '')


class TestErrors(unittest.TestCase):

    def test_status_mapping(self):
        self.assertEqual(ServiceError(ErrorCode.CONFLICT, 'x').status, 409)
        self.assertEqual(ServiceError(ErrorCode.INVALID_TRANSITION, 'x').status, 409)
        self.assertEqual(http_status_for(ErrorCode.VALIDATION_ERROR), 400)
        self.assertEqual(http_status_for(ErrorCode.UNKNOWN_ERROR), 500)


class TestModels(unittest.TestCase):

    def test_transitions(self):
        self.assertTrue(can_transition('pending', 'approved'))
        self.assertTrue(can_transition('approved', 'enhancing'))
        self.assertTrue(can_transition('enhancement_failed', 'enhancing'))
        self.assertFalse(can_transition('rejected', 'approved'))
        self.assertFalse(can_transition('enhanced', 'pending'))
        self.assertFalse(can_transition('pending', 'bogus'))

    def test_encounter_round_trip_keeps_wire_names(self):
        encounter = Encounter.from_dict({
            'id': 'e1', 'authorName': 'Sam', 'rating': 7, 'ratingCount': -1,
            'location': {'latitude': 1, 'longitude': 2},
            'illustrationUrl': 'http://media/1.png',
            'status': EncounterStatus.ENHANCED.value,
        })
        self.assertEqual(encounter.rating, 5.0)
        self.assertEqual(encounter.rating_count, 0)
        self.assertEqual(encounter.illustration_url, 'http://media/1.png')
        out = encounter.to_dict()
        self.assertEqual(out['authorName'], 'Sam')
        self.assertEqual(out['illustrationUrls'], ['http://media/1.png'])

    def test_story_prefers_enhanced(self):
        encounter = Encounter(id='e1', author_name='Sam', location=None,
                              original_story='short', enhanced_story='long')
        self.assertEqual(encounter.story, 'long')


# ===========================================================================
# Helpers shared by the REST services
# ===========================================================================

class TestPageTokens(unittest.TestCase):

    def test_round_trip(self):
        self.assertEqual(decode_page_token(encode_page_token(40)), 40)

    def test_empty_is_zero(self):
        self.assertEqual(decode_page_token(None), 0)

    def test_garbage_rejected(self):
        with self.assertRaises(ServiceError) as ctx:
            decode_page_token('%%%')
        self.assertEqual(ctx.exception.code, ErrorCode.VALIDATION_ERROR)


class TestTimeMatching(unittest.TestCase):

    def test_within_two_hours(self):
        self.assertTrue(is_time_matched(datetime(2024, 1, 1, 22, 0),
                                        datetime(2024, 6, 5, 23, 59)))

    def test_wraps_midnight(self):
        self.assertTrue(is_time_matched(datetime(2024, 1, 1, 23, 30),
                                        datetime(2024, 1, 2, 0, 45)))

    def test_outside_window(self):
        self.assertFalse(is_time_matched(datetime(2024, 1, 1, 12, 0),
                                         datetime(2024, 1, 1, 15, 0)))

    def test_parse_timestamp_normalises_to_utc(self):
        parsed = parse_timestamp('2024-01-01T01:00:00+02:00')
        self.assertEqual(parsed, datetime(2023, 12, 31, 23, 0, tzinfo=timezone.utc))
        self.assertEqual(parse_timestamp('2024-01-01T01:00:00Z').hour, 1)


class TestUploadSigner(unittest.TestCase):

    def setUp(self):
        self.now = 1_000_000
        self.signer = UploadSigner('secret', 'http://media.test/', clock=lambda: self.now)

    def _query(self, url):
        from urllib.parse import parse_qs, urlparse
        return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}

    def test_url_shape(self):
        url = self.signer.sign('e1', 0)
        self.assertTrue(url.startswith('http://media.test/api/uploads/e1/0?'))
        self.assertEqual(self._query(url)['expires'], str(self.now + 900))

    def test_verify(self):
        query = self._query(self.signer.sign('e1', 1))
        self.assertTrue(self.signer.verify('e1', 1, query['expires'], query['signature']))
        self.assertFalse(self.signer.verify('e1', 2, query['expires'], query['signature']))
        self.assertFalse(self.signer.verify('e2', 1, query['expires'], query['signature']))

    def test_expired(self):
        query = self._query(self.signer.sign('e1', 0))
        self.now += 901
        self.assertFalse(self.signer.verify('e1', 0, query['expires'], query['signature']))

    def test_sign_all(self):
        self.assertEqual(len(self.signer.sign_all('e1', 3)), 3)


if __name__ == '__main__':
    unittest.main()
