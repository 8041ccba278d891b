"""Tests for the HTTP API."""

import io

import soundfile as sf

from tests.conftest import SR, generate_click_track


def _wav_bytes(seconds=5.0):
    buf = io.BytesIO()
    sf.write(buf, generate_click_track(bpm=120, duration_seconds=seconds), SR, format="WAV")
    return buf.getvalue()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_api_analyze_endpoint(client):
    """POST /api/analyze should return a full analysis."""
    response = client.post(
        "/api/analyze", files={"file": ("test.wav", _wav_bytes(), "audio/wav")},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["bpm"] > 0
    assert data["confidence_level"] in ("high", "medium", "low")
    assert len(data["beats"]) > 0
    assert data["beats"] == sorted(data["beats"])
    assert data["tempo_regions"][0]["type"] == "steady"
    assert data["duration"] > 4.9


def test_manual_bpm_endpoint(client):
    analysis = client.post(
        "/api/analyze", files={"file": ("test.wav", _wav_bytes(), "audio/wav")},
    ).json()

    response = client.post("/api/bpm", json={"result": analysis, "bpm": 140})
    assert response.status_code == 200
    data = response.json()
    assert data["bpm"] == 140
    assert data["confidence"] == 1.0
    assert data["confidence_level"] == "high"
    assert data["offset"] == analysis["offset"]
    assert all(r["bpm"] == 140 for r in data["tempo_regions"] if r["type"] == "steady")


def test_manual_bpm_rejects_non_positive(client):
    analysis = client.post(
        "/api/analyze", files={"file": ("test.wav", _wav_bytes(3.0), "audio/wav")},
    ).json()
    response = client.post("/api/bpm", json={"result": analysis, "bpm": 0})
    assert response.status_code == 422


def test_unsupported_extension(client):
    response = client.post(
        "/api/analyze", files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert response.status_code == 400


def test_empty_upload(client):
    response = client.post(
        "/api/analyze", files={"file": ("empty.wav", b"", "audio/wav")},
    )
    assert response.status_code == 400


def test_undecodable_upload(client):
    response = client.post(
        "/api/analyze", files={"file": ("broken.wav", b"not really audio", "audio/wav")},
    )
    assert response.status_code == 500
    assert response.json()["detail"] == "Analysis failed"
