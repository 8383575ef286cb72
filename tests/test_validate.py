"""Acceptance run of bevseg.validate against the shipped config."""

from pathlib import Path

import numpy as np
import pytest

from bevseg.config import load_config
from bevseg.validate import build_oracle_segmenter, default_boxes, main, make_box_cloud, run_validation


CONFIG_PATH = Path(__file__).resolve().parents[1] / "segmenter.yaml"


def test_run_validation_passes(capsys):
    assert run_validation(str(CONFIG_PATH))
    out = capsys.readouterr().out
    assert "[FAIL]" not in out
    assert "[PASS] Kernels compiled" in out
    assert "[PASS] Closed extent corners" in out


def test_box_cloud_layout():
    boxes = default_boxes()
    cloud = make_box_cloud(boxes, "base_link", points_per_box=100, seed=1)
    assert cloud.points.shape == (200, 4)
    first = cloud.points[:100]
    assert np.all(np.abs(first[:, 0] - boxes[0].center_x) <= boxes[0].length / 2)
    assert np.all((first[:, 2] >= boxes[0].z_min) & (first[:, 2] <= boxes[0].z_max))


def test_oracle_objects_match_boxes():
    cfg = load_config(CONFIG_PATH)
    boxes = default_boxes()
    seg = build_oracle_segmenter(cfg, boxes)
    result = seg.process(make_box_cloud(boxes, cfg.transforms.target_frame))
    assert [o.label for o in result.objects] == ["car", "pedestrian"]
    car = result.objects[0]
    assert car.bbox.center_x == pytest.approx(10.0, abs=0.2)
    assert car.bbox.center_y == pytest.approx(5.0, abs=0.2)
    assert car.bbox.length == pytest.approx(4.0, abs=0.2)
    assert car.point_count == 2000


def test_main_exit_code(monkeypatch):
    monkeypatch.setattr("sys.argv", ["bevseg-validate", "--config", str(CONFIG_PATH)])
    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 0
