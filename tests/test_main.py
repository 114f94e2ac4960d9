import logging

import pytest
import yaml

from app_energy import config
from app_energy.main import main

from conftest import urban_layers

BOUNDS = "30.0,-1.0,30.05,-0.95"


def test_cli_prints_report(raster_env, tmp_path, capsys):
    registry = urban_layers(raster_env).registry_path()
    preview = tmp_path / "preview.png"
    code = main(
        [
            "--bounds",
            BOUNDS,
            "--year",
            "2023",
            "--rasters",
            str(registry),
            "--preview-out",
            str(preview),
        ]
    )
    assert code == 0
    doc = yaml.safe_load(capsys.readouterr().out)
    assert "imageUrl" not in doc
    assert doc["statistics"]["chosenStage"] == "strict"
    assert doc["bounds"] == {
        "west": 30.0,
        "south": -1.0,
        "east": 30.05,
        "north": -0.95,
    }
    assert preview.read_bytes()[:4] == b"\x89PNG"


def test_cli_classified_error_exits_1(raster_env, capsys, caplog):
    registry = urban_layers(raster_env, light_years=(2015,)).registry_path()
    with caplog.at_level(logging.ERROR, logger="app_energy.main"):
        code = main(["--bounds", BOUNDS, "--year", "2023", "--rasters", str(registry)])
    assert code == 1
    assert capsys.readouterr().out == ""
    logged = [r.getMessage() for r in caplog.records if r.name == "app_energy.main"][-1]
    assert "'error': 'DataUnavailableError'" in logged
    assert "'status_code': 404" in logged
    assert "'years_attempted': [2023, 2022, 2021]" in logged


def test_cli_bad_bounds_exits_2(raster_env):
    with pytest.raises(SystemExit) as info:
        main(["--bounds", "1,2,3", "--year", "2023"])
    assert info.value.code == 2


def test_cli_missing_settings_file(raster_env, tmp_path):
    registry = urban_layers(raster_env).registry_path()
    code = main(
        [
            "--bounds",
            BOUNDS,
            "--year",
            "2023",
            "--rasters",
            str(registry),
            "--settings",
            str(tmp_path / "missing.yml"),
        ]
    )
    assert code == 1


@pytest.mark.parametrize(
    "argv",
    [
        ["--bounds", "30.05,-1.0,30.0,-0.95", "--year", "2023"],
        ["--bounds", "30.0,-1.0,200.0,-0.95", "--year", "2023"],
        ["--bounds", "0,0,10,10", "--year", "2023"],
        ["--bounds", BOUNDS, "--year", "1999"],
        ["--city", "Chicago", "--year", "2200"],
    ],
)
def test_cli_invalid_request_exits_2(raster_env, argv, capsys):
    with pytest.raises(SystemExit) as info:
        main(argv)
    assert info.value.code == 2
    assert capsys.readouterr().out == ""


def test_cli_unknown_city_lists_supported(raster_env, capsys):
    with pytest.raises(SystemExit) as info:
        main(["--city", "Atlantis", "--year", "2023"])
    assert info.value.code == 2
    err = capsys.readouterr().err
    assert 'City "Atlantis" not found or not supported' in err
    assert "New York" in err
    assert "Singapore" in err


def test_cli_bounds_and_city_are_exclusive(raster_env):
    with pytest.raises(SystemExit) as info:
        main(["--bounds", BOUNDS, "--city", "Chicago", "--year", "2023"])
    assert info.value.code == 2


def test_cli_needs_bounds_or_city(raster_env):
    with pytest.raises(SystemExit) as info:
        main(["--year", "2023"])
    assert info.value.code == 2


def test_cli_city_report(raster_env, monkeypatch, capsys):
    monkeypatch.setitem(config.CITY_BOUNDS, "Kigali East", (30.0, -1.0, 30.05, -0.95))
    registry = urban_layers(raster_env).registry_path()
    code = main(["--city", "Kigali East", "--year", "2023", "--rasters", str(registry)])
    assert code == 0
    doc = yaml.safe_load(capsys.readouterr().out)
    assert doc["cityName"] == "Kigali East"
    assert doc["bounds"]["west"] == 30.0
