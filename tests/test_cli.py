import json

import pytest

import vodclip.doctor as doctor
from vodclip.cli import _fmt_time, main
from vodclip.models import CodecProfile
from vodclip.profile import ClipperSettings, DeliverySettings, UpstreamSettings


def test_fmt_time():
    assert _fmt_time(0) == "00:00.000"
    assert _fmt_time(75.5) == "01:15.500"
    assert _fmt_time(3725.25) == "01:02:05.250"
    assert _fmt_time(-3) == "00:00.000"


def test_doctor_reports_missing_pieces(monkeypatch):
    monkeypatch.setattr(doctor, "find_tool", lambda cmd: None)
    report = doctor.run_doctor(ClipperSettings())
    assert report.ok is False
    assert report.checks["ffmpeg"]["found"] is False
    assert report.checks["upstream"]["configured"] is False
    assert "VC_BASE_URL" in report.checks["upstream"]["note"]


def test_doctor_ok(monkeypatch, tmp_path):
    monkeypatch.setattr(doctor, "find_tool", lambda cmd: "/usr/bin/ffmpeg")
    monkeypatch.setattr(doctor, "_version", lambda cmd: "ffmpeg version 6.1")
    monkeypatch.setattr(doctor, "_has_encoder", lambda cmd, name: True)
    settings = ClipperSettings(
        upstream=UpstreamSettings(base_url="https://origin.test"),
        delivery=DeliverySettings(scratch_dir=tmp_path),
    )
    report = doctor.run_doctor(settings)
    assert report.ok is True
    assert report.checks["ffmpeg"]["version"] == "ffmpeg version 6.1"
    assert report.checks["libx264"]["available"] is True
    assert report.checks["scratch_dir"]["writable"] is True


def test_doctor_flags_missing_encoder_only_for_transcode(monkeypatch, tmp_path):
    monkeypatch.setattr(doctor, "find_tool", lambda cmd: "/usr/bin/ffmpeg")
    monkeypatch.setattr(doctor, "_version", lambda cmd: "ffmpeg version 6.1")
    monkeypatch.setattr(doctor, "_has_encoder", lambda cmd, name: False)
    upstream = UpstreamSettings(base_url="https://origin.test")
    delivery = DeliverySettings(scratch_dir=tmp_path)

    report = doctor.run_doctor(ClipperSettings(upstream=upstream, delivery=delivery))
    assert report.ok is False
    assert "VC_COPY_CODECS" in report.checks["libx264"]["note"]

    remux = ClipperSettings(upstream=upstream, delivery=delivery, codec_profile=CodecProfile.REMUX)
    report = doctor.run_doctor(remux)
    assert report.ok is True
    assert "libx264" not in report.checks


def test_has_encoder_reads_encoder_list(fake_tool):
    tool = fake_tool(
        """
        print("Encoders:")
        print(" V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC")
        print(" A....D aac                  AAC (Advanced Audio Coding)")
        """
    )
    assert doctor._has_encoder(tool, "libx264") is True
    assert doctor._has_encoder(tool, "libx265") is False
    assert doctor._has_encoder("/no/such/ffmpeg", "libx264") is False


def test_doctor_command_exit_code(monkeypatch, capsys):
    monkeypatch.setattr(doctor, "find_tool", lambda cmd: None)
    for name in ("VC_BASE_URL", "VC_FFMPEG"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["doctor"])
    assert excinfo.value.code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["ok"] is False


def test_snap_requires_upstream(monkeypatch, capsys):
    monkeypatch.delenv("VC_BASE_URL", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["snap", "abc", "--start", "12", "--end", "22"])
    assert excinfo.value.code == 2
    assert "base_url" in capsys.readouterr().err
