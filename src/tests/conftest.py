import cv2
import numpy as np
import pytest
from detection.line_transform import LineTransform

WIDTH, HEIGHT = 320, 240

# Two vertical lines of three plates, 82 px apart. At theta = 0 they land
# in offset bins 50 and 58, both well inside their bins.
LINE1_X, LINE2_X = 113, 195
PLATE_YS = (60, 120, 180)

SKY_BGR = (255, 150, 100)
GROUND_BGR = (30, 30, 30)
PLATE_BGR = (0, 255, 255)
PLATE_RADIUS = 8


@pytest.fixture
def transform():
    return LineTransform(WIDTH, HEIGHT, 10, 10)


@pytest.fixture
def arch_points():
    return [(x, y) for x in (LINE1_X, LINE2_X) for y in PLATE_YS]


def draw_scene(plates=True, horizon_row=30):
    """Synthetic frame: sky above horizon_row, dark ground below, yellow plates."""
    frame = np.empty((HEIGHT, WIDTH, 3), dtype=np.uint8)
    frame[:horizon_row] = SKY_BGR
    frame[horizon_row:] = GROUND_BGR
    if plates:
        for x in (LINE1_X, LINE2_X):
            for y in PLATE_YS:
                cv2.circle(frame, (x, y), PLATE_RADIUS, PLATE_BGR, thickness=-1)
    return frame
