from flask import Blueprint, request, jsonify, current_app
import base64
import logging

from physio.conversation import ConversationOrchestrator
from physio.errors import InvalidTransition, NotAuthenticated
from physio.groq_transcribe import UploadedAudioRecognizer
from physio.groq_tts_speech import AudioClipSynthesizer
from physio.intake_flow import FEEDBACK_OPTIONS, IntakeFlow
from physio.session_manager import SessionManager
from physio.voice_services import VoiceServices, VoiceSettings

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__)

PATIENT_HEADER = 'X-Patient-Id'


def _physio():
    return current_app.extensions['physio']


def _patient_id():
    patient_id = request.headers.get(PATIENT_HEADER, '').strip()
    if not patient_id:
        raise NotAuthenticated()
    return patient_id


def _new_flow(patient_id):
    physio = _physio()
    config = current_app.config
    sessions = SessionManager(physio['store'], patient_id=patient_id)
    voice = VoiceServices(
        recognizer=UploadedAudioRecognizer(model=config['GROQ_STT_MODEL']),
        synthesizer=AudioClipSynthesizer(model=config['GROQ_TTS_MODEL'], default_voice=config['GROQ_TTS_VOICE']),
    )
    voice_settings = VoiceSettings(voice=config['GROQ_TTS_VOICE'])
    boot_delay = config['BOOT_DELAY']

    def new_conversation():
        return ConversationOrchestrator(physio['generator'], voice, sessions,
                                        boot_delay=boot_delay, voice_settings=voice_settings)

    logger.info(f"Creating intake flow for patient {patient_id}")
    return IntakeFlow(sessions, new_conversation)


def get_flow() -> IntakeFlow:
    """IntakeFlow for the patient named in the request header, created on first use"""
    patient_id = _patient_id()
    physio = _physio()
    with physio['lock']:
        flow = physio['flows'].get(patient_id)
        if flow is None:
            flow = _new_flow(patient_id)
            physio['flows'][patient_id] = flow
    return flow


def get_conversation(flow):
    if flow.conversation is None:
        raise InvalidTransition("No conversation in progress")
    return flow.conversation


def success(**payload):
    return jsonify({'status': 'success', **payload})


@api_bp.route('/provider-status', methods=['GET'])
def provider_status():
    """Report whether AI replies are available"""
    is_available = _physio()['generator'].is_available()
    return jsonify({
        'isAvailable': is_available,
        'message': 'Groq API is available' if is_available else 'Groq API key not found'
    })


# Conversation

@api_bp.route('/conversation/start', methods=['POST'])
def start_conversation():
    data = request.get_json(silent=True) or {}
    method = data.get('method', 'text')
    if method not in ('text', 'voice'):
        return jsonify({
            'status': 'error',
            'message': "method must be 'text' or 'voice'"
        }), 400

    flow = get_flow()
    conversation = flow.start_conversation(method)
    return success(flow=flow.to_dict(), conversation=conversation.to_dict())


@api_bp.route('/conversation', methods=['GET'])
def conversation_state():
    flow = get_flow()
    conversation = flow.conversation.to_dict() if flow.conversation is not None else None
    return success(flow=flow.to_dict(), conversation=conversation)


@api_bp.route('/conversation/message', methods=['POST'])
def send_message():
    data = request.get_json(silent=True)
    if not data or not str(data.get('text', '')).strip():
        return jsonify({
            'status': 'error',
            'message': 'No message text provided'
        }), 400

    flow = get_flow()
    conversation = get_conversation(flow)
    reply = conversation.handle_user_input(str(data['text']))
    return success(reply=reply.to_dict() if reply else None, conversation=conversation.to_dict())


@api_bp.route('/conversation/voice', methods=['POST'])
def send_voice():
    """Transcribe an uploaded clip, run its turn and return the spoken reply"""
    if 'audio' not in request.files:
        return jsonify({
            'status': 'error',
            'message': 'No audio file provided'
        }), 400

    audio_bytes = request.files['audio'].read()
    if not audio_bytes:
        return jsonify({
            'status': 'error',
            'message': 'Empty audio file'
        }), 400

    flow = get_flow()
    conversation = get_conversation(flow)
    voice = conversation.voice

    if not voice.is_listening_active() and not conversation.start_voice_input():
        return jsonify({
            'status': 'error',
            'message': 'Speech recognition not available'
        }), 503

    result = voice.recognizer.feed(audio_bytes)
    if result is None:
        return jsonify({
            'status': 'error',
            'message': 'No speech detected. Please try again.'
        }), 422

    replies = conversation.process_pending_speech()
    clip = voice.synthesizer.take_clip()
    logger.info(f"Voice turn: '{result.transcript[:50]}' -> {len(replies)} replies, audio: {clip is not None}")

    return success(
        transcript=result.transcript,
        confidence=result.confidence,
        replies=[reply.to_dict() for reply in replies],
        audio=base64.b64encode(clip).decode('utf-8') if clip else None,
        conversation=conversation.to_dict()
    )


# Exercise

@api_bp.route('/exercise/start', methods=['POST'])
def start_exercise():
    flow = get_flow()
    recommendation = flow.show_exercise()
    return success(
        recommendation=recommendation.to_dict() if recommendation else None,
        flow=flow.to_dict()
    )


@api_bp.route('/exercise/<action>', methods=['POST'])
def exercise_action(action):
    flow = get_flow()
    actions = {
        'play': flow.play_exercise,
        'pause': flow.pause_exercise,
        'advance': flow.advance_exercise,
        'reset': flow.reset_exercise,
    }
    if action not in actions:
        return jsonify({
            'status': 'error',
            'message': f'Unknown exercise action: {action}'
        }), 404

    actions[action]()
    return success(flow=flow.to_dict())


@api_bp.route('/exercise/feedback', methods=['POST'])
def exercise_feedback():
    data = request.get_json(silent=True) or {}
    feedback = data.get('feedback')
    if feedback not in FEEDBACK_OPTIONS:
        return jsonify({
            'status': 'error',
            'message': f"feedback must be one of: {', '.join(FEEDBACK_OPTIONS)}"
        }), 400

    pain_level_after = data.get('pain_level_after')
    if pain_level_after is not None:
        if isinstance(pain_level_after, bool) or not isinstance(pain_level_after, int) or not 1 <= pain_level_after <= 10:
            return jsonify({
                'status': 'error',
                'message': 'pain_level_after must be an integer between 1 and 10'
            }), 400

    flow = get_flow()
    flow.submit_feedback(feedback, pain_level_after=pain_level_after)
    return success(flow=flow.to_dict())


# Booking

@api_bp.route('/booking/open', methods=['POST'])
def open_booking():
    flow = get_flow()
    booking = flow.open_booking()
    return success(booking=booking.to_dict(), flow=flow.to_dict())


@api_bp.route('/booking/complete', methods=['POST'])
def complete_booking():
    flow = get_flow()
    booking = flow.complete_booking()
    return success(booking=booking.to_dict(), flow=flow.to_dict())


# Session

@api_bp.route('/session/end', methods=['POST'])
def end_session():
    """Sign the patient out, closing any open session"""
    patient_id = _patient_id()
    physio = _physio()
    with physio['lock']:
        flow = physio['flows'].pop(patient_id, None)
    if flow is not None:
        flow.sign_out()
    return success(message='Session ended')
