import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from adm.analyzer import analyze_file, build_analyzer_cmd
from adm.clip_report import ClipVerdict
from adm.errors import AnalysisUnavailable


AFCLIP_CLIPPED = """\
afclip : "/music/track.m4a"    2 ch,  44100 Hz, 'aac ' (0x00000000) 0 bits/channel
       SECONDS        SAMPLE  CHAN         VALUE       DECIBELS
        0.1956          8630     0     -1.005417           0.05
        0.1957          8631     1      1.006290           0.05

total clipped samples for Left channel,  on-sample: 1  inter-sample: 0
total clipped samples for Right channel, on-sample: 1  inter-sample: 0
"""


def _completed(stdout, returncode=0):
    return subprocess.CompletedProcess(args=["afclip"], returncode=returncode, stdout=stdout)


def test_command_is_analyze_only():
    assert build_analyzer_cmd(Path("/music/a.m4a")) == ["afclip", "-x", "/music/a.m4a"]


@patch("adm.analyzer.subprocess.run")
def test_merges_streams_and_parses(mock_run):
    mock_run.return_value = _completed(AFCLIP_CLIPPED)
    report = analyze_file(Path("/music/track.m4a"), analyzer="/usr/bin/afclip")

    assert mock_run.call_args.kwargs["stderr"] is subprocess.STDOUT
    assert mock_run.call_args[0][0][0] == "/usr/bin/afclip"
    assert report.filename == "track.m4a"
    assert report.sample_rate == 44100
    assert report.verdict is ClipVerdict.CLIPPED
    assert len(report.events) == 2


@patch("adm.analyzer.subprocess.run")
def test_nonzero_exit_still_parses(mock_run):
    mock_run.return_value = _completed("no samples clipped\n", returncode=1)
    report = analyze_file(Path("/music/track.m4a"))
    assert report.has_no_clipping
    assert report.verdict is ClipVerdict.CLEAN


@patch("adm.analyzer.subprocess.run", side_effect=FileNotFoundError("afclip"))
def test_launch_failure_raises(mock_run):
    with pytest.raises(AnalysisUnavailable) as exc:
        analyze_file(Path("/music/track.m4a"))
    assert exc.value.path.name == "track.m4a"
    assert "afclip" in str(exc.value)
