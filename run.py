#!/usr/bin/env python3
"""
Fit4Life Application Entry Point

    python run.py web [--port 5000]        serve the HTTP API
    python run.py console [--voice]        talk to the assistant in a terminal
"""

import os
import sys
import argparse
import logging
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from app import configure_logging, create_app
from physio.conversation import ConversationOrchestrator
from physio.database import SQLiteSessionStore, init_db
from physio.environment import EnvironmentConfig
from physio.errors import PhysioError
from physio.groq_integration import ResponseGenerator
from physio.groq_transcribe import MicrophoneRecognizer
from physio.groq_tts_speech import SoundDeviceSynthesizer
from physio.intake_flow import BOOKING, NECK_MOBILITY_STEPS, IntakeFlow
from physio.session_manager import SessionManager
from physio.voice_services import VoiceServices, VoiceSettings

logger = logging.getLogger(__name__)

QUIT_COMMANDS = ('quit', 'exit', 'bye')


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Run the Fit4Life physiotherapy intake assistant'
    )
    subparsers = parser.add_subparsers(dest='mode', required=True)

    web = subparsers.add_parser('web', help='Serve the HTTP API')
    web.add_argument('--port', type=int, default=5000, help='Port to run the app on (default: 5000)')
    web.add_argument('--host', type=str, default='0.0.0.0', help='Host to bind to (default: 0.0.0.0)')
    web.add_argument('--debug', action='store_true', help='Enable debug mode')

    console = subparsers.add_parser('console', help='Run a conversation in this terminal')
    console.add_argument('--voice', action='store_true', help='Use the microphone and speakers')
    console.add_argument('--patient-id', type=str, default=os.environ.get('USER', 'console-patient'),
                         help='Patient identity for session records')

    return parser.parse_args()


def run_web(args, env):
    app = create_app({'DEBUG': env.debug_mode or args.debug})
    port = int(os.environ.get('PORT', args.port))

    logger.info(f'Starting Fit4Life API on {args.host}:{port}')
    logger.debug("Registered URL Rules:")
    for rule in app.url_map.iter_rules():
        logger.debug(f"Route: {rule}, Endpoint: {rule.endpoint}")

    app.run(host=args.host, port=port, debug=app.config.get('DEBUG', False), threaded=True)


def build_voice(env, use_voice):
    if not use_voice:
        return VoiceServices()

    return VoiceServices(
        recognizer=MicrophoneRecognizer(model=env.stt_model),
        synthesizer=SoundDeviceSynthesizer(model=env.tts_model, default_voice=env.tts_voice),
    )


def print_message(message):
    speaker = "You" if message.sender == "user" else "Fit4Life"
    print(f"\n{speaker}: {message.text}")


def next_utterance(conversation, use_voice):
    """One patient utterance: typed text, or the next final transcript in voice mode"""
    if not use_voice:
        return input("\nYou: ").strip(), None

    while True:
        result = conversation.speech_events.next_final(timeout=0.5)
        if result is not None and result.transcript.strip():
            print(f"\nYou (voice, {result.confidence:.0%}): {result.transcript}")
            return result.transcript.strip(), result


def run_exercise(flow):
    print("\n--- Neck mobility exercise ---")
    flow.play_exercise()
    print(f"  1. {NECK_MOBILITY_STEPS[0]}")
    while not flow.exercise.show_feedback:
        input("  (press Enter for the next step)")
        progress = flow.advance_exercise()
        if not progress.show_feedback:
            print(f"  {progress.current_step + 1}. {NECK_MOBILITY_STEPS[progress.current_step]}")

    feedback = ''
    while feedback not in ('better', 'pain'):
        feedback = input("\nHow do you feel now? [better/pain]: ").strip().lower()
    flow.submit_feedback(feedback)

    if flow.state == BOOKING:
        booking = flow.open_booking()
        print("\nWe've booked you an NHS physiotherapy appointment.")
        print(f"  Reference: {booking.booking_id}")
        print(f"  Date: {booking.appointment_date:%A %d %B %Y}")
        flow.complete_booking()
    else:
        print("\nGreat progress! We're glad you're feeling better. Keep up the good work!")


def run_console(args, env):
    if env.auto_init_db:
        init_db(env.database_path)

    generator = ResponseGenerator.from_environment(model=env.chat_model, timeout=env.request_timeout)
    sessions = SessionManager(SQLiteSessionStore(env.database_path), patient_id=args.patient_id)
    voice = build_voice(env, args.voice)
    settings = VoiceSettings(voice=env.tts_voice)

    def new_conversation():
        # Local speakers feed straight back into the microphone
        return ConversationOrchestrator(generator, voice, sessions, boot_delay=env.boot_delay,
                                        speak_while_listening=False, voice_settings=settings)

    flow = IntakeFlow(sessions, new_conversation)
    conversation = flow.start_conversation("voice" if args.voice else "text")
    if flow.db_error:
        print(f"\n[warning] {flow.db_error}")
    for message in conversation.messages:
        print_message(message)

    if args.voice and not conversation.start_voice_input():
        print("\n[warning] Speech recognition not available, falling back to typing")
        args.voice = False

    print("\n(Type 'exercise' once unlocked to start the exercise, 'quit' to leave)")
    try:
        while True:
            text, result = next_utterance(conversation, args.voice)
            if not text:
                continue
            if text.lower() in QUIT_COMMANDS:
                break

            if text.lower() == 'exercise' and conversation.exercise_unlocked:
                conversation.stop_voice_input()
                recommendation = flow.show_exercise()
                if recommendation is not None:
                    print_message(recommendation)
                run_exercise(flow)
                return

            reply = conversation.handle_user_input(
                text, is_voice=result is not None, confidence=result.confidence if result else None)
            if reply is not None:
                print_message(reply)
            if conversation.exercise_unlocked:
                print("\n(Exercise unlocked: say or type 'exercise' to begin)")
    finally:
        flow.sign_out()


def main():
    """Main application entry point"""
    args = parse_arguments()
    env = EnvironmentConfig()
    configure_logging(debug=env.debug_mode)

    is_valid, missing_vars = env.validate_environment()
    if not is_valid:
        logger.warning(f"Running in offline mode (missing: {', '.join(missing_vars)})")

    try:
        if args.mode == 'web':
            run_web(args, env)
        else:
            run_console(args, env)
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
    except PhysioError as e:
        logger.error(f"Failed to start application: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
