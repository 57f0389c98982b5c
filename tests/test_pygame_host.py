import pygame
import pytest

from kiosk_avatar.audio import idle_ring_frame
from kiosk_avatar.config import AudioConfig, RenderConfig
from kiosk_avatar.gaze import EyeGaze, GazeVector
from kiosk_avatar.pygame_host import PygameSceneHost
from kiosk_avatar.scene import SceneSynchronizer


@pytest.fixture
def surface():
    pygame.init()
    yield pygame.Surface((320, 200))
    pygame.quit()


def test_projection_centres_the_origin(surface):
    host = PygameSceneHost(RenderConfig(depth_offset=4.0), surface=surface)
    x, y, scale = host.project((0.0, 0.0, 0.0))
    assert (x, y, scale) == (160.0, 100.0, 1.0)
    nearer = host.project((0.5, 0.0, -1.0))
    farther = host.project((0.5, 0.0, 1.0))
    assert nearer[0] > farther[0] > 160.0
    assert nearer[2] > 1.0 > farther[2]


def test_present_draws_eyes_and_rings(surface):
    config = RenderConfig()
    host = PygameSceneHost(config, surface=surface)
    host.create_resources()
    assert host.ready
    host.present(idle_ring_frame(AudioConfig(ring_count=4)))
    assert host.frames == 1
    ball = host.scene.node("ballL")
    x, y, _ = host.project(ball.anchor)
    assert tuple(surface.get_at((int(x), int(y) + 12)))[:3] == config.eye_color
    iris_x, iris_y, _ = host.project(host.scene.node("irisL").anchor)
    assert tuple(surface.get_at((int(iris_x), int(iris_y))))[:3] == config.iris_color


def test_iris_follows_gaze(surface):
    config = RenderConfig(smoothing_alpha=1.0)
    host = PygameSceneHost(config, surface=surface)
    host.create_resources()
    eye = EyeGaze(1.0, 0.0, 0.0, 1.0)
    SceneSynchronizer(host.scene, config).step(GazeVector(left=eye, right=eye))
    host.present()
    iris = host.scene.node("irisR")
    moved_x, moved_y, _ = host.project(
        (iris.anchor[0] + iris.transform.x, iris.anchor[1], iris.anchor[2])
    )
    assert tuple(surface.get_at((int(moved_x), int(moved_y))))[:3] == config.iris_color


def test_present_after_dispose_is_a_no_op(surface):
    host = PygameSceneHost(surface=surface)
    host.create_resources()
    host.dispose()
    assert not host.ready
    assert host.scene.frozen
    host.present()
    assert host.frames == 0
    with pytest.raises(RuntimeError):
        host.create_resources()
