import os
import json
import base64
import tempfile
import unittest
from io import BytesIO
from unittest.mock import patch, MagicMock

from app import create_app
from physio.conversation import WELCOME_OFFLINE
from physio.database import SQLiteSessionStore
from physio.groq_integration import OFFLINE_RESPONSE, ResponseGenerator
from physio.intake_flow import DB_SETUP_REQUIRED, NECK_MOBILITY_STEPS

from conftest import FakeProvider

PATIENT = {'X-Patient-Id': 'patient-42'}


class APITestCase(unittest.TestCase):
    def setUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        self.app = create_app({
            'TESTING': True,
            'DATABASE_PATH': self.db_path,
            'AUTO_INIT_DB': True,
            'GROQ_API_KEY': None,
            'BOOT_DELAY': 0,
        })
        self.client = self.app.test_client()
        self.store = SQLiteSessionStore(self.db_path)

        # Minimal WAV header
        self.test_audio = b'RIFF\x24\x00\x00\x00WAVEfmt \x10\x00\x00\x00\x01\x00\x01\x00\x44\xAC\x00\x00\x88\x58\x01\x00\x02\x00\x10\x00data\x00\x00\x00\x00'

    def tearDown(self):
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def use_online_generator(self, replies=None):
        self.app.extensions['physio']['generator'] = ResponseGenerator(provider=FakeProvider(replies=replies))

    def post(self, path, payload=None, headers=PATIENT):
        return self.client.post(f'/api{path}', json=payload, headers=headers)

    def test_provider_status_offline(self):
        response = self.client.get('/api/provider-status')
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertFalse(data['isAvailable'])
        self.assertEqual(data['message'], 'Groq API key not found')

    def test_provider_status_online(self):
        self.use_online_generator()
        data = json.loads(self.client.get('/api/provider-status').data)
        self.assertTrue(data['isAvailable'])
        self.assertEqual(data['message'], 'Groq API is available')

    def test_requests_need_patient_header(self):
        response = self.post('/conversation/start', {'method': 'text'}, headers={})
        self.assertEqual(response.status_code, 401)
        data = json.loads(response.data)
        self.assertEqual(data['status'], 'error')
        self.assertEqual(data['message'], 'User not authenticated')

    def test_start_conversation_offline(self):
        response = self.post('/conversation/start', {'method': 'text'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['flow']['state'], 'conversation')
        self.assertTrue(data['flow']['session_active'])
        self.assertIsNone(data['flow']['db_error'])
        self.assertEqual(data['conversation']['messages'][0]['text'], WELCOME_OFFLINE)

        sessions = self.store.list_sessions(patient_id='patient-42')
        self.assertEqual(len(sessions), 1)

    def test_start_conversation_bad_method(self):
        response = self.post('/conversation/start', {'method': 'telepathy'})
        self.assertEqual(response.status_code, 400)

    def test_start_without_tables_reports_setup(self):
        fd, empty_path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        try:
            app = create_app({
                'TESTING': True,
                'DATABASE_PATH': empty_path,
                'AUTO_INIT_DB': False,
                'GROQ_API_KEY': None,
                'BOOT_DELAY': 0,
            })
            response = app.test_client().post('/api/conversation/start', json={'method': 'text'},
                                              headers=PATIENT)
            self.assertEqual(response.status_code, 200)
            data = json.loads(response.data)
            self.assertEqual(data['flow']['db_error'], DB_SETUP_REQUIRED)
            self.assertFalse(data['flow']['session_active'])
        finally:
            os.remove(empty_path)

    def test_message_without_conversation(self):
        response = self.post('/conversation/message', {'text': 'hello'})
        self.assertEqual(response.status_code, 409)

    def test_empty_message(self):
        self.post('/conversation/start', {'method': 'text'})
        response = self.post('/conversation/message', {'text': '   '})
        self.assertEqual(response.status_code, 400)

    def test_message_turn(self):
        self.post('/conversation/start', {'method': 'text'})
        response = self.post('/conversation/message', {'text': 'I have neck pain, level 7'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['reply']['text'], OFFLINE_RESPONSE)
        self.assertEqual(data['conversation']['pain_level'], 7)
        self.assertEqual(data['conversation']['pain_location'], 'neck')
        self.assertEqual(data['conversation']['current_step'], 0)

        state = json.loads(self.client.get('/api/conversation', headers=PATIENT).data)
        self.assertEqual(len(state['conversation']['messages']), 3)

    def test_voice_no_file(self):
        self.post('/conversation/start', {'method': 'voice'})
        response = self.client.post('/api/conversation/voice', headers=PATIENT)
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data)
        self.assertEqual(data['status'], 'error')

    @patch.dict(os.environ, {'GROQ_API_KEY': 'test_api_key'})
    @patch('physio.groq_transcribe.requests.post')
    def test_voice_turn_returns_transcript_and_audio(self, mock_post):
        def fake_post(url, **kwargs):
            response = MagicMock(status_code=200)
            if 'transcriptions' in url:
                response.json.return_value = {'text': 'my back hurts', 'segments': [{'avg_logprob': 0.0}]}
            else:
                response.content = b'RIFF-reply'
            return response

        mock_post.side_effect = fake_post
        self.use_online_generator(["That sounds uncomfortable. How long has it been sore?"])
        self.post('/conversation/start', {'method': 'voice'})

        response = self.client.post(
            '/api/conversation/voice',
            data={'audio': (BytesIO(self.test_audio), 'clip.wav')},
            content_type='multipart/form-data',
            headers=PATIENT
        )

        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['transcript'], 'my back hurts')
        self.assertEqual(data['confidence'], 1.0)
        self.assertEqual(len(data['replies']), 1)
        user_messages = [m for m in data['conversation']['messages'] if m['sender'] == 'user']
        self.assertEqual([m['text'] for m in user_messages], ['my back hurts'])
        self.assertTrue(user_messages[0]['is_voice'])
        self.assertEqual(data['audio'], base64.b64encode(b'RIFF-reply').decode('utf-8'))

    @patch.dict(os.environ, {'GROQ_API_KEY': 'test_api_key'})
    @patch('physio.groq_transcribe.requests.post')
    def test_voice_without_speech(self, mock_post):
        mock_post.return_value.status_code = 200
        mock_post.return_value.json.return_value = {'text': '', 'segments': []}
        self.post('/conversation/start', {'method': 'voice'})

        response = self.client.post(
            '/api/conversation/voice',
            data={'audio': (BytesIO(self.test_audio), 'clip.wav')},
            content_type='multipart/form-data',
            headers=PATIENT
        )

        self.assertEqual(response.status_code, 422)

    def test_exercise_before_unlock(self):
        self.post('/conversation/start', {'method': 'text'})
        response = self.post('/exercise/start')
        self.assertEqual(response.status_code, 409)

    def test_unknown_exercise_action(self):
        response = self.post('/exercise/stretch')
        self.assertEqual(response.status_code, 404)

    def test_invalid_feedback(self):
        response = self.post('/exercise/feedback', {'feedback': 'meh'})
        self.assertEqual(response.status_code, 400)
        response = self.post('/exercise/feedback', {'feedback': 'pain', 'pain_level_after': True})
        self.assertEqual(response.status_code, 400)
        response = self.post('/exercise/feedback', {'feedback': 'pain', 'pain_level_after': 11})
        self.assertEqual(response.status_code, 400)

    def test_full_journey_to_booking(self):
        self.use_online_generator(["Thanks, noted.", "Let's get you moving.", "Try slow neck rotations."])
        self.post('/conversation/start', {'method': 'text'})
        self.post('/conversation/message', {'text': 'I have neck pain, level 7'})
        data = json.loads(self.post('/conversation/message', {'text': 'Can I do an exercise?'}).data)
        self.assertTrue(data['conversation']['exercise_unlocked'])

        data = json.loads(self.post('/exercise/start').data)
        self.assertEqual(data['recommendation']['text'], 'Try slow neck rotations.')
        self.assertEqual(data['flow']['state'], 'exercise')

        self.post('/exercise/play')
        for _ in NECK_MOBILITY_STEPS:
            data = json.loads(self.post('/exercise/advance').data)
        self.assertTrue(data['flow']['exercise']['show_feedback'])

        data = json.loads(self.post('/exercise/feedback', {'feedback': 'pain', 'pain_level_after': 8}).data)
        self.assertEqual(data['flow']['state'], 'booking')

        booking = json.loads(self.post('/booking/open').data)['booking']
        data = json.loads(self.post('/booking/complete').data)
        self.assertEqual(data['booking']['booking_id'], booking['booking_id'])
        self.assertEqual(data['flow']['state'], 'blob')

        record = self.store.list_sessions(patient_id='patient-42')[0]
        self.assertTrue(record['booking_requested'])
        self.assertEqual(record['booking_id'], booking['booking_id'])
        self.assertEqual(record['pain_level_initial'], 7)
        self.assertIsNotNone(record['session_end'])

    def test_session_end_signs_out(self):
        self.post('/conversation/start', {'method': 'text'})
        response = self.post('/session/end')
        self.assertEqual(response.status_code, 200)

        record = self.store.list_sessions(patient_id='patient-42')[0]
        self.assertIsNotNone(record['session_end'])

        state = json.loads(self.client.get('/api/conversation', headers=PATIENT).data)
        self.assertIsNone(state['conversation'])
        self.assertEqual(state['flow']['state'], 'blob')

    def test_unknown_route(self):
        response = self.client.get('/api/nowhere')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(json.loads(response.data)['status'], 'error')


if __name__ == '__main__':
    unittest.main()
