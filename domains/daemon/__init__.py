"""
Daemon Domain

Background service lifecycle and the files it shares with clients:
- service.py - state machine, pipeline wiring, Control Channel server
- state.py - state directory (lock, pid, activity log, status snapshot)
- status.py - status fan-out to subscribers
- autostart.py - login-item management
"""
