"""
Game components for boardwatch.

Main Components:
    - occupancy: grid <-> square helpers, expected grid from a position
    - infer_move: legal move explaining an occupancy change
    - GameSession: position, human colour, outcome
    - GameStateMachine: debounce, turn-taking, events
    - MoveRecommender: UCI engine on a worker thread
"""

from .move_inference import InferenceResult, infer_move
from .session import GameSession
from .state_machine import GameState, GameStateMachine
from .recommender import MoveRecommender
