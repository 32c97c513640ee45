"""
Validation case -> voice-diagnosis handoff client.

Supports runtime modes:
- off: disabled; every analysis request fails with DiagnosisError
- http: POST the audio sample to a voice-diagnosis HTTP endpoint
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from env_loader import env_float, env_str
from errors import DiagnosisError
from models import VoiceDiagnosisResult

logger = logging.getLogger(__name__)


class DiagnosisProvider:
    mode = "custom"

    def analyze(self, audio_data: bytes, context: Dict[str, Any]) -> VoiceDiagnosisResult:
        raise NotImplementedError


def _to_float(value: object) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _feature_names(value: object) -> List[str]:
    if isinstance(value, dict):
        return [str(k) for k, v in value.items() if v]
    if isinstance(value, list):
        names: List[str] = []
        for item in value:
            if isinstance(item, dict):
                name = item.get("name") or item.get("feature")
                if name:
                    names.append(str(name))
            elif item:
                names.append(str(item))
        return names
    return []


def parse_diagnosis_payload(payload: Any) -> VoiceDiagnosisResult:
    """Maps a voice-diagnosis response body onto `VoiceDiagnosisResult`."""
    if isinstance(payload, dict):
        for envelope in ("results", "result", "data"):
            if isinstance(payload.get(envelope), dict):
                payload = payload[envelope]
                break
    if not isinstance(payload, dict):
        raise DiagnosisError("Voice diagnosis payload must be a JSON object.")

    tone_scores: Dict[str, float] = {}
    raw_scores = payload.get("toneScores") or payload.get("toneAnalysis") or {}
    if isinstance(raw_scores, dict):
        for tone, score in raw_scores.items():
            parsed = _to_float(score)
            if parsed is not None:
                tone_scores[str(tone)] = parsed

    dominant = payload.get("dominantTone")
    if not dominant and tone_scores:
        dominant = max(tone_scores, key=tone_scores.get)

    timbre = payload.get("timbreAnalysis") or {}
    features = _feature_names(timbre.get("features") if isinstance(timbre, dict) else None)
    if not features:
        features = _feature_names(payload.get("timbreFeatures"))

    confidence = _to_float(payload.get("confidence"))
    if confidence is not None:
        confidence = max(0.0, min(1.0, confidence))

    engine_version = payload.get("modelVersion") or payload.get("version")

    return VoiceDiagnosisResult(
        dominant_tone=str(dominant) if dominant else None,
        tone_scores=tone_scores,
        timbre_features=features,
        confidence=confidence,
        engine_version=str(engine_version) if engine_version else None,
        raw=payload,
    )


class VoiceDiagnosisClient(DiagnosisProvider):
    def __init__(self, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.mode = env_str("VG_VOICE_DIAGNOSIS_MODE", "off").lower()
        if self.mode not in {"off", "http"}:
            logger.warning("Unsupported VG_VOICE_DIAGNOSIS_MODE=%s; defaulting to off.", self.mode)
            self.mode = "off"
        self.timeout_seconds = max(1.0, env_float("VG_VOICE_DIAGNOSIS_TIMEOUT_SECONDS", 10.0))
        self.base_url = (os.getenv("VG_VOICE_DIAGNOSIS_BASE_URL", "") or "").strip()
        self.path = env_str("VG_VOICE_DIAGNOSIS_PATH", "/voice-diagnosis/analyze")
        self._transport = transport

    def analyze(self, audio_data: bytes, context: Dict[str, Any]) -> VoiceDiagnosisResult:
        if not audio_data:
            raise DiagnosisError("No audio data supplied for voice diagnosis.")
        if self.mode == "off":
            raise DiagnosisError("Voice diagnosis service is disabled (VG_VOICE_DIAGNOSIS_MODE=off).")
        if not self.base_url:
            raise DiagnosisError("VG_VOICE_DIAGNOSIS_BASE_URL is required for http mode.")

        url = urljoin(self.base_url.rstrip("/") + "/", self.path.lstrip("/"))
        form = {
            "isValidationCase": "true",
            "caseId": str(context.get("caseId") or ""),
            "patientInfo": json.dumps(context.get("patientInfo") or {}, ensure_ascii=False),
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = client.post(
                    url,
                    data=form,
                    files={"audioFile": ("sample.wav", audio_data, "application/octet-stream")},
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise DiagnosisError(
                f"Voice diagnosis returned HTTP {exc.response.status_code} for case {form['caseId']}."
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise DiagnosisError(f"Voice diagnosis request failed: {exc}") from exc

        return parse_diagnosis_payload(payload)
