"""End-to-end tests for the command line."""

import json
from io import BytesIO

import pytest
from PIL import Image
from typer.testing import CliRunner

from tour.process import app

runner = CliRunner()


def write_panorama(path, width=64, height=32):
    buffer = BytesIO()
    Image.new("RGB", (width, height), (80, 160, 240)).save(buffer, format="PNG")
    path.write_bytes(buffer.getvalue())
    return path


@pytest.fixture
def workspace(tmp_path):
    """Project with two imported scenes."""
    project_path = tmp_path / "tour.project.json"
    assets_dir = tmp_path / "assets"

    result = runner.invoke(app, ["new", str(project_path), "--title", "Demo Tour"])
    assert result.exit_code == 0, result.output

    a = write_panorama(tmp_path / "lobby.png")
    b = write_panorama(tmp_path / "hall.png")
    result = runner.invoke(app, ["import", str(project_path), str(a), str(b), "--assets-dir", str(assets_dir)])
    assert result.exit_code == 0, result.output

    return tmp_path, project_path, assets_dir


def read_scenes(project_path):
    return json.loads(project_path.read_text(encoding="utf-8"))["scenes"]


class TestProjectCommands:
    """Tests for new, import, info and validate."""

    def test_new_refuses_overwrite(self, tmp_path):
        project_path = tmp_path / "tour.project.json"
        runner.invoke(app, ["new", str(project_path)])

        result = runner.invoke(app, ["new", str(project_path)])

        assert result.exit_code == 1

    def test_import(self, workspace):
        _, project_path, assets_dir = workspace

        scenes = read_scenes(project_path)

        assert [s["name"] for s in scenes] == ["lobby", "hall"]
        for scene in scenes:
            assert (assets_dir / f"{scene['id']}.bin").exists()

    def test_import_bad_file_exits_nonzero(self, workspace):
        tmp_path, project_path, assets_dir = workspace
        bad = tmp_path / "broken.jpg"
        bad.write_bytes(b"not an image")
        good = write_panorama(tmp_path / "roof.png")

        result = runner.invoke(app, ["import", str(project_path), str(bad), str(good), "--assets-dir", str(assets_dir)])

        assert result.exit_code == 1
        assert [s["name"] for s in read_scenes(project_path)] == ["lobby", "hall", "roof"]

    def test_info_and_validate(self, workspace):
        _, project_path, _ = workspace

        assert runner.invoke(app, ["info", str(project_path)]).exit_code == 0
        assert runner.invoke(app, ["validate", str(project_path)]).exit_code == 0

    def test_validate_rejects_version(self, tmp_path):
        path = tmp_path / "future.json"
        path.write_text(json.dumps({"version": 2, "title": "x", "scenes": []}))

        result = runner.invoke(app, ["validate", str(path)])

        assert result.exit_code == 1

    def test_unreadable_file_exits_nonzero(self, tmp_path):
        """A file that is not UTF-8 fails cleanly instead of crashing."""
        path = tmp_path / "latin1.json"
        path.write_bytes(b'{"version": 1, "title": "\xff", "scenes": []}')

        assert runner.invoke(app, ["info", str(path)]).exit_code == 1
        assert runner.invoke(app, ["validate", str(path)]).exit_code == 1

    def test_import_respects_pixel_limit(self, workspace, monkeypatch):
        tmp_path, project_path, assets_dir = workspace
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", Image.MAX_IMAGE_PIXELS)
        big = write_panorama(tmp_path / "big.png", width=200, height=100)

        result = runner.invoke(app, [
            "import", str(project_path), str(big),
            "--assets-dir", str(assets_dir), "--max-pixels", "10000",
        ])

        assert result.exit_code == 1
        assert len(read_scenes(project_path)) == 2


class TestHotspotCommands:
    """Tests for hotspot and scene editing commands."""

    def test_add_link_and_info(self, workspace):
        _, project_path, _ = workspace
        first, second = [s["id"] for s in read_scenes(project_path)]

        result = runner.invoke(app, [
            "hotspot-add", str(project_path), first,
            "--kind", "link", "--yaw", "0.5", "--pitch", "0.1", "--target", second,
        ])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["hotspot-add", str(project_path), first, "--x", "48", "--y", "16"])
        assert result.exit_code == 0, result.output

        hotspots = read_scenes(project_path)[0]["hotspots"]
        assert hotspots[0]["type"] == "link"
        assert hotspots[0]["targetSceneId"] == second
        assert hotspots[1]["type"] == "info"
        assert hotspots[1]["title"] == "Info 1"
        assert hotspots[1]["yaw"] == pytest.approx(1.5707963, rel=1e-6)
        assert hotspots[1]["pitch"] == pytest.approx(0.0)

    def test_link_to_self_rejected(self, workspace):
        _, project_path, _ = workspace
        first = read_scenes(project_path)[0]["id"]

        result = runner.invoke(app, [
            "hotspot-add", str(project_path), first,
            "--kind", "link", "--yaw", "0", "--pitch", "0", "--target", first,
        ])

        assert result.exit_code == 1

    def test_add_warns_about_overlap(self, workspace):
        _, project_path, _ = workspace
        first = read_scenes(project_path)[0]["id"]
        runner.invoke(app, ["hotspot-add", str(project_path), first, "--yaw", "0.3", "--pitch", "0"])

        result = runner.invoke(app, ["hotspot-add", str(project_path), first, "--yaw", "0.31", "--pitch", "0"])

        assert result.exit_code == 0, result.output
        assert "Overlaps existing hotspot" in result.output
        assert len(read_scenes(project_path)[0]["hotspots"]) == 2

    def test_remove_hotspot(self, workspace):
        _, project_path, _ = workspace
        first = read_scenes(project_path)[0]["id"]
        runner.invoke(app, ["hotspot-add", str(project_path), first, "--yaw", "0", "--pitch", "0"])
        hotspot_id = read_scenes(project_path)[0]["hotspots"][0]["id"]

        result = runner.invoke(app, ["hotspot-remove", str(project_path), first, hotspot_id])

        assert result.exit_code == 0
        assert read_scenes(project_path)[0]["hotspots"] == []

    def test_scene_remove(self, workspace):
        _, project_path, assets_dir = workspace
        first, second = [s["id"] for s in read_scenes(project_path)]
        runner.invoke(app, [
            "hotspot-add", str(project_path), first,
            "--kind", "link", "--yaw", "0", "--pitch", "0", "--target", second,
        ])

        result = runner.invoke(app, ["scene-remove", str(project_path), second, "--assets-dir", str(assets_dir)])

        assert result.exit_code == 0
        scenes = read_scenes(project_path)
        assert [s["id"] for s in scenes] == [first]
        assert scenes[0]["hotspots"] == []
        assert not (assets_dir / f"{second}.bin").exists()


class TestExportCommands:
    """Tests for export and check-export."""

    def test_export_directory(self, workspace):
        tmp_path, project_path, assets_dir = workspace
        runtime = tmp_path / "marzipano.js"
        runtime.write_text("window.Marzipano = {};\n", encoding="utf-8")
        out = tmp_path / "out"
        out.mkdir()

        result = runner.invoke(app, [
            "export", str(project_path),
            "--target-dir", str(out),
            "--runtime", str(runtime),
            "--assets-dir", str(assets_dir),
        ])
        assert result.exit_code == 0, result.output

        bundles = list(out.iterdir())
        assert len(bundles) == 1
        assert len(list((bundles[0] / "assets").iterdir())) == 2

        result = runner.invoke(app, ["check-export", str(bundles[0])])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["check-export", str(bundles[0] / "viewer_standalone.html")])
        assert result.exit_code == 0, result.output

    def test_export_single_file(self, workspace):
        tmp_path, project_path, assets_dir = workspace
        runtime = tmp_path / "marzipano.js"
        runtime.write_text("window.Marzipano = {};\n", encoding="utf-8")
        downloads = tmp_path / "downloads"

        result = runner.invoke(app, [
            "export", str(project_path),
            "--runtime", str(runtime),
            "--downloads-dir", str(downloads),
            "--assets-dir", str(assets_dir),
        ])

        assert result.exit_code == 0, result.output
        assert (downloads / "Demo_Tour_viewer.html").exists()

    def test_export_missing_runtime(self, workspace):
        tmp_path, project_path, assets_dir = workspace

        result = runner.invoke(app, [
            "export", str(project_path),
            "--runtime", str(tmp_path / "nope.js"),
            "--assets-dir", str(assets_dir),
        ])

        assert result.exit_code == 1
