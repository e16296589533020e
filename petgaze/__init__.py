"""
PetGaze - webcam gaze tracking core for a desktop virtual pet.

Turns webcam frames into a calibrated on-screen gaze point, with a
nine-point calibration protocol and dwell-based fixation events.

Privacy First:
- All processing happens locally
- No data sent over network
- No video recording
- Minimal data storage (numeric calibration parameters only)

Architecture:
- Explicit engine context owned by the host, no global state
- Pluggable gaze sources (webcam, synthetic, pointer)
- Detection off the main loop on a worker thread
"""

__version__ = "0.1.0"
__license__ = "MIT"
