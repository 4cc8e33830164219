"""Tests for the demo CLI helpers."""

import argparse
import json

import demo_cli


def _args(**overrides) -> argparse.Namespace:
    values = {
        "pathology": "SAH",
        "admission": None,
        "procedure": None,
        "expectation": None,
        "json": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestSplitNotes:
    """Test note splitting on separator lines."""

    def test_separator_lines(self):
        text = "Started nimodipine.\n---\nPOD#6 vasospasm.\n  ---  \nDischarged home."
        assert demo_cli.split_notes(text) == [
            "Started nimodipine.",
            "POD#6 vasospasm.",
            "Discharged home.",
        ]

    def test_blank_notes_dropped(self):
        assert demo_cli.split_notes("---\n\n---\nVasospasm.") == ["Vasospasm."]


class TestAnalyze:
    """Test running the sample course."""

    def test_sample_course(self):
        result = demo_cli.analyze_notes(demo_cli.SAMPLE_NOTES, _args())
        assert result.reference_dates.admission.isoformat() == "2024-03-01"
        assert result.timeline.events
        assert result.treatment_responses.protocol_compliance is not None

    def test_command_line_anchor(self):
        result = demo_cli.analyze_notes(["POD#3 hydrocephalus."], _args(procedure="2024-03-02"))
        assert result.reference_dates.first_procedure.isoformat() == "2024-03-02"

    def test_json_output(self, capsys):
        demo_cli.run_and_display(demo_cli.SAMPLE_NOTES, _args(json=True))
        data = json.loads(capsys.readouterr().out)
        assert "timeline" in data

    def test_formatted_output(self, capsys):
        demo_cli.run_and_display(demo_cli.SAMPLE_NOTES, _args())
        assert "CAUSAL TIMELINE" in capsys.readouterr().out
