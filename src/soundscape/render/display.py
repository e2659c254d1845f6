"""
Interactive pygame window.

Polls the coordinator for the latest snapshot at the window frame rate,
independently of the simulation tick rate, and forwards keyboard
shortcuts as pipeline commands.
"""

import logging

import numpy as np
import pygame

from soundscape.config import WindowConfig
from soundscape.pipeline import PipelineCoordinator
from soundscape.render.palette import CellPainter

logger = logging.getLogger(__name__)

KEY_COMMANDS = {
    pygame.K_r: ("reset", None),
    pygame.K_SPACE: ("reset", None),
    pygame.K_c: ("clear", None),
    pygame.K_f: ("toggle_fullscreen", None),
    pygame.K_1: ("color_scheme", "classic"),
    pygame.K_2: ("color_scheme", "heat"),
    pygame.K_3: ("color_scheme", "rainbow"),
    pygame.K_4: ("color_scheme", "pulse"),
    pygame.K_TAB: ("color_scheme", None),
    pygame.K_ESCAPE: ("stop", None),
    pygame.K_q: ("stop", None),
}


class Display:
    """Window owner. Runs on the main thread."""

    def __init__(
        self,
        coordinator: PipelineCoordinator,
        window: WindowConfig,
        painter: CellPainter,
    ):
        self.coordinator = coordinator
        self.window = window
        self.painter = painter
        self.screen: pygame.Surface | None = None
        self._fullscreen = False
        self._drawn: tuple[int, str] | None = None

    def handle_key(self, key: int) -> bool:
        """Dispatch a key press. Returns True if the key is bound."""
        binding = KEY_COMMANDS.get(key)
        if binding is None:
            return False
        command, value = binding
        self.coordinator.handle(command, value)
        return True

    def _open(self, fullscreen: bool):
        if fullscreen:
            self.screen = pygame.display.set_mode((0, 0), pygame.FULLSCREEN)
        else:
            self.screen = pygame.display.set_mode((self.window.width, self.window.height))
        self._fullscreen = fullscreen
        # Force a repaint onto the new surface
        self._drawn = None

    def _draw(self, view):
        snapshot = self.coordinator.latest()
        if snapshot is None or (snapshot.sequence, view.color_scheme) == self._drawn:
            return

        frame = self.painter.paint(snapshot, view.color_scheme)
        # pygame surfaces are (width, height)
        surface = pygame.surfarray.make_surface(np.transpose(frame, (1, 0, 2)))
        if surface.get_size() != self.screen.get_size():
            surface = pygame.transform.scale(surface, self.screen.get_size())
        self.screen.blit(surface, (0, 0))
        self._drawn = (snapshot.sequence, view.color_scheme)

        status = self.coordinator.status()
        rules = status.rules
        pygame.display.set_caption(
            f"{self.window.title} - Gen {status.generation} - {rules.survival_variant} "
            f"- bias {rules.birth_bias:.2f} - mutation {rules.mutation_rate:.3f}"
        )

    def run(self):
        """
        Event/render loop. Returns after the coordinator has stopped.

        The window is released only once the pipeline has shut down.
        """
        pygame.init()
        clock = pygame.time.Clock()
        try:
            self._open(self.coordinator.view().fullscreen)
            while not self.coordinator.closed:
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self.coordinator.handle("stop")
                    elif event.type == pygame.KEYDOWN:
                        self.handle_key(event.key)
                if self.coordinator.closed:
                    break

                self.coordinator.raise_if_failed()

                view = self.coordinator.view()
                if view.fullscreen != self._fullscreen:
                    logger.debug("Fullscreen %s", "on" if view.fullscreen else "off")
                    self._open(view.fullscreen)

                self._draw(view)
                pygame.display.flip()
                clock.tick(self.window.fps)
        finally:
            self.coordinator.stop()
            pygame.quit()
