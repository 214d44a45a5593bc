"""Depth-first exploration of the planet with backtracking.

Architecture:
    explore()                       step_to(cell)
    ├─ pick first safe neighbour ─► rotate (<= 2x), scan, move
    │  in N, E, S, W order          └─ hazard / crash / occupied => no move
    ├─ dead end => pop and step back along the known-safe path
    └─ empty path => walk over visited cells to the nearest frontier

The rover never moves onto a cell whose scan reported a hazard, and the
path stack always ends at the cell the rover stands on between steps.
"""

import logging
import threading
import time
from collections import deque
from enum import Enum

from errors import (
    BacktrackError, NotLandedError, RoverConnectionError, RoverError,
)

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = 'idle'
    EXPLORING = 'exploring'
    FINISHED = 'finished'
    ABORTED = 'aborted'


class StepOutcome(Enum):
    MOVED = 'moved'
    HAZARD = 'hazard'
    CRASHED = 'crashed'
    OCCUPIED = 'occupied'


class CrashPolicy(Enum):
    MARK_DANGER = 'mark_danger'
    MARK_AFTER_REPEAT = 'mark_after_repeat'


# ---------------------------------------------------------------------------
# ExplorationEngine
# ---------------------------------------------------------------------------

class ExplorationEngine:
    """Explores every safe cell reachable from the landing cell.

    Args:
        session: RoverSession to issue primitives through.
        crash_policy: CrashPolicy (defaults to the session config's).
        crash_threshold: Crashes into one cell before it counts as danger
            under MARK_AFTER_REPEAT.
    """

    # Pause between iterations so waiting ground station commands get the lock
    STEP_PAUSE = 0.001

    def __init__(self, session, crash_policy=None, crash_threshold=None):
        self.session = session
        config = session.config
        if crash_policy is None:
            crash_policy = CrashPolicy(config.crash_policy)
        self.crash_policy = crash_policy
        self.crash_threshold = (crash_threshold if crash_threshold is not None
                                else config.crash_threshold)

        self.state = EngineState.IDLE
        self.path = []
        self.blocked = set()
        self.crash_counts = {}
        self.visit_order = []
        self.steps = 0
        self.error = None

        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._thread = None

    # -- Single step ----------------------------------------------------------

    def step_to(self, target):
        """Rotate towards the adjacent `target`, scan it, and move if safe.

        Holds the session's action lock for the whole sequence so ground
        station commands only run between steps.

        Returns:
            StepOutcome.

        Raises:
            NonAdjacentMoveError: `target` is not a direct neighbour.
            ProtocolError, RoverConnectionError: from the planet exchange.
        """
        session = self.session
        with session.action_lock:
            needed = session.state.heading_towards(target)
            for turn in session.state.plan_turn(needed):
                session.rotate(turn)

            measurement = session.scan()
            if session.is_hazard(measurement.ground):
                logger.info("Danger at %s (%s), not moving",
                            target, measurement.ground)
                return StepOutcome.HAZARD

            if session.is_occupied(target):
                logger.info("Another robot at %s, not moving", target)
                return StepOutcome.OCCUPIED

            self.steps += 1
            if not session.move():
                return StepOutcome.CRASHED
            return StepOutcome.MOVED

    # -- DFS ------------------------------------------------------------------

    def _next_neighbour(self, cell):
        session = self.session
        for neighbour in session.grid.neighbours(*cell):
            if neighbour in self.blocked:
                continue
            if session.is_danger(neighbour) or session.is_visited(neighbour):
                continue
            return neighbour
        return None

    def _handle_failure(self, target, outcome):
        if outcome is StepOutcome.HAZARD:
            self.session.mark_danger(target)
        elif outcome is StepOutcome.OCCUPIED:
            self.blocked.add(target)
        elif outcome is StepOutcome.CRASHED:
            count = self.crash_counts.get(target, 0) + 1
            self.crash_counts[target] = count
            if (self.crash_policy is CrashPolicy.MARK_DANGER
                    or count >= self.crash_threshold):
                self.session.mark_danger(target)
            else:
                logger.warning("Crash %d/%d into %s, will try again",
                               count, self.crash_threshold, target)

    def _step_back(self, cell):
        outcome = self.step_to(cell)
        if outcome is not StepOutcome.MOVED:
            raise BacktrackError(
                f"Could not step back to {cell}: {outcome.value}"
            )

    def _iterate(self):
        session = self.session
        current = self.path[-1]
        if session.state.position != current:
            raise BacktrackError(
                f"Rover at {session.state.position} left the "
                f"exploration path at {current}"
            )

        target = self._next_neighbour(current)
        if target is not None:
            outcome = self.step_to(target)
            if outcome is StepOutcome.MOVED:
                session.mark_visited(target)
                self.path.append(target)
                self.visit_order.append(target)
            else:
                self._handle_failure(target, outcome)
            return

        # Dead end: backtrack along the path
        self.path.pop()
        if self.path:
            self._step_back(self.path[-1])

    # -- Frontier search ------------------------------------------------------

    def _frontier_route(self, origin):
        """Shortest walk over visited cells to one with an unexplored neighbour.

        Returns:
            list of cells to step through (empty if `origin` itself has an
            unexplored neighbour), or None if nothing is left to explore.
        """
        session = self.session
        previous = {origin: None}
        queue = deque([origin])
        while queue:
            cell = queue.popleft()
            if self._next_neighbour(cell) is not None:
                route = []
                while cell != origin:
                    route.append(cell)
                    cell = previous[cell]
                return route[::-1]
            for neighbour in session.grid.neighbours(*cell):
                if neighbour in previous or neighbour in self.blocked:
                    continue
                if session.is_visited(neighbour) and not session.is_danger(neighbour):
                    previous[neighbour] = cell
                    queue.append(neighbour)
        return None

    def _seek_frontier(self):
        """Move one step towards the nearest frontier, or restart the path there.

        Returns:
            False once no reachable cell is left unexplored.
        """
        position = self.session.state.position
        route = self._frontier_route(position)
        if route is None:
            return False
        if route:
            self._step_back(route[0])
        else:
            logger.info("Resuming depth-first search at %s", position)
            self.path = [position]
        return True

    def explore(self):
        """Run the depth-first exploration until every reachable cell is visited.

        A run that was stopped continues on its old path if the rover is
        still at its end; otherwise the search restarts from the current
        cell and reaches cells cut off by earlier runs through the frontier
        search.

        Returns:
            list of cells in the order they were first entered.
        """
        session = self.session
        if session.state is None or not session.state.landed:
            raise NotLandedError("Land before exploring")
        if not session.resume():
            raise RoverConnectionError("Rover is disconnected")

        start = session.state.position
        session.mark_visited(start)
        with self._lock:
            resuming = (self.state is EngineState.ABORTED and self.path
                        and self.path[-1] == start)
            self.state = EngineState.EXPLORING
            self.error = None
            self.blocked = set()
            if not resuming:
                self.crash_counts = {}
                self.path = [start]
                self.visit_order = [start]
        if resuming:
            logger.info("Exploration resumed at %s, %d cells on the path",
                        start, len(self.path))
        else:
            logger.info("Exploration started at %s", start)

        try:
            while True:
                if not session.running:
                    logger.info("Exploration stopped with %d cells on the path",
                                len(self.path))
                    self.state = EngineState.ABORTED
                    return self.visit_order

                # Ground station commands may only slip in between iterations
                with session.action_lock:
                    if self.path:
                        self._iterate()
                    elif not self._seek_frontier():
                        break
                time.sleep(self.STEP_PAUSE)

        except RoverError as e:
            self.state = EngineState.ABORTED
            self.error = e
            logger.error("Exploration aborted: %s", e)
            raise

        self.state = EngineState.FINISHED
        logger.info("Exploration finished: %d cells visited, %d dangerous",
                    len(session.visited), len(session.danger))
        return self.visit_order

    # -- Background run -------------------------------------------------------

    def _run(self):
        try:
            self.explore()
        except RoverError as e:
            if self.state is not EngineState.ABORTED:
                logger.error("Exploration could not start: %s", e)
            self.error = e

    def start(self):
        """Run explore() in a daemon thread.

        Returns:
            False if an exploration is already running.
        """
        with self._start_lock:
            if self.is_running():
                return False
            self._thread = threading.Thread(target=self._run, daemon=True,
                                            name='exploration')
            self._thread.start()
        return True

    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def wait(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_running()

    def progress(self):
        """Status dict for the control API."""
        return {
            'state': self.state.value,
            'path_depth': len(self.path),
            'visited': len(self.session.visited),
            'danger': len(self.session.danger),
            'steps': self.steps,
            'crash_policy': self.crash_policy.value,
            'error': str(self.error) if self.error else None,
        }
