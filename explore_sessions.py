# Fit4Life/explore_sessions.py

import os
import argparse
from pprint import pprint

from physio.database import SQLiteSessionStore
from physio.environment import DEFAULT_DB_PATH

SUMMARY_FIELDS = (
    'pain_level_initial', 'pain_location', 'completed_exercise', 'exercise_feedback',
    'pain_level_after', 'booking_requested', 'booking_id',
)


def print_session(store, session, show_interactions=True):
    print(f"\n--- Session ID: {session['id']} ---")
    print(f"Patient: {session['patient_id']}")
    print(f"Started: {session['session_start']}, Ended: {session['session_end'] or 'still open'}")
    for field in SUMMARY_FIELDS:
        if session.get(field) is not None:
            print(f"{field}: {session[field]}")
    if session.get('session_data'):
        print("Session Data:")
        pprint(session['session_data'])

    if not show_interactions:
        return

    interactions = store.list_interactions(session['id'])
    print(f"Interactions ({len(interactions)}):")
    for interaction in interactions:
        data = interaction['interaction_data']
        if interaction['interaction_type'] == 'message' and isinstance(data, dict):
            print(f"  [{interaction['timestamp']}] {str(data.get('sender', '')).capitalize()}: {data.get('message')}")
        else:
            print(f"  [{interaction['timestamp']}] {interaction['interaction_type']}: {data}")


def main():
    parser = argparse.ArgumentParser(description='Dump stored patient sessions and their interaction logs')
    parser.add_argument('--db', default=os.environ.get('PHYSIO_DB_PATH', DEFAULT_DB_PATH), help='Database path')
    parser.add_argument('--patient-id', help='Only show sessions for this patient')
    parser.add_argument('--session-id', help='Only show this session')
    parser.add_argument('--summary', action='store_true', help='Skip interaction logs')
    args = parser.parse_args()

    if not os.path.exists(args.db):
        print(f"Database not found at {args.db}")
        return

    store = SQLiteSessionStore(args.db)

    if args.session_id:
        session = store.get_session(args.session_id)
        if not session:
            print(f"No session found with ID {args.session_id}")
            return
        print_session(store, session, show_interactions=not args.summary)
        return

    sessions = store.list_sessions(patient_id=args.patient_id)
    print(f"=== {len(sessions)} Sessions ===")
    for session in sessions:
        print_session(store, session, show_interactions=not args.summary)


if __name__ == "__main__":
    main()
