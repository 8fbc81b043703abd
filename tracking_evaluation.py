"""
Tracking evaluation

Summary statistics for tracking sessions (how often the face detector ran,
how often tracking was lost, per-stage latency) and landmark accuracy
metrics against ground truth.

License: MIT
"""

import numpy as np
from scipy import stats
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass, asdict

from landmark_geometry import LandmarkCollection
from landmark_tracker import FrameResult, TrackingPhase


@dataclass
class TrackingStatistics:
    """Aggregate statistics of a tracking session."""
    n_frames: int = 0
    n_frames_with_landmarks: int = 0
    n_frames_tracked: int = 0  # frames that started in the tracking phase
    n_detector_calls: int = 0
    n_acquisitions: int = 0  # searching -> tracking
    n_losses: int = 0  # failed continuation checks
    landmark_rate: float = 0.0
    tracked_fraction: float = 0.0
    detection_time_mean_ms: float = 0.0
    regression_time_mean_ms: float = 0.0
    processing_time_mean_ms: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def interocular_distance(
    landmarks: LandmarkCollection,
    left_id: str = 'left_eye_outer',
    right_id: str = 'right_eye_outer'
) -> float:
    """Distance between two eye landmarks, used to normalize errors."""
    left, right = landmarks[left_id], landmarks[right_id]
    return float(np.hypot(right.x - left.x, right.y - left.y))


class TrackingEvaluator:
    """Evaluates tracking sessions and landmark accuracy."""

    def summarize(self, results: Sequence[FrameResult]) -> TrackingStatistics:
        """
        Aggregate per-frame results of one session.

        Args:
            results: Frame results in processing order

        Returns:
            TrackingStatistics
        """
        n = len(results)
        if n == 0:
            return TrackingStatistics()

        with_landmarks = sum(r.has_landmarks for r in results)
        tracked = sum(r.phase_before is TrackingPhase.TRACKING for r in results)
        detector_calls = [r for r in results if r.detector_invoked]
        acquisitions = sum(r.face_region is not None for r in results)

        return TrackingStatistics(
            n_frames=n,
            n_frames_with_landmarks=with_landmarks,
            n_frames_tracked=tracked,
            n_detector_calls=len(detector_calls),
            n_acquisitions=acquisitions,
            n_losses=sum(r.tracking_lost for r in results),
            landmark_rate=with_landmarks / n,
            tracked_fraction=tracked / n,
            detection_time_mean_ms=float(np.mean(
                [r.detection_time_ms for r in detector_calls]
            )) if detector_calls else 0.0,
            regression_time_mean_ms=float(np.mean(
                [r.regression_time_ms for r in results]
            )),
            processing_time_mean_ms=float(np.mean(
                [r.processing_time_ms for r in results]
            ))
        )

    def evaluate_landmark_accuracy(
        self,
        predictions: np.ndarray,
        ground_truth: np.ndarray,
        iod: np.ndarray,
        confidence: float = 0.95
    ) -> Dict[str, float]:
        """
        Evaluate landmark localization accuracy.

        Args:
            predictions: F x N x 2 predicted landmarks (pixels)
            ground_truth: F x N x 2 ground truth landmarks
            iod: F inter-ocular distances (pixels)
            confidence: Level of the NME confidence interval

        Returns:
            Dictionary of accuracy metrics
        """
        predictions = np.asarray(predictions, dtype=np.float64)
        ground_truth = np.asarray(ground_truth, dtype=np.float64)
        iod = np.asarray(iod, dtype=np.float64)

        if predictions.shape != ground_truth.shape:
            raise ValueError("Predictions and ground truth must have same shape")
        if len(iod) != len(predictions):
            raise ValueError("Need one inter-ocular distance per frame")
        if np.any(iod <= 0):
            raise ValueError("Inter-ocular distances must be positive")

        # Mean Localization Error per frame
        errors = np.linalg.norm(predictions - ground_truth, axis=2)
        mle_per_frame = np.mean(errors, axis=1)

        # Normalized Mean Error
        nme = mle_per_frame / iod

        results = {
            'mle_mean': float(np.mean(mle_per_frame)),
            'mle_std': float(np.std(mle_per_frame)),
            'nme_mean': float(np.mean(nme)),
            'nme_std': float(np.std(nme)),
            'dr_5': float(np.mean(nme < 0.05)),
            'dr_8': float(np.mean(nme < 0.08)),
            'dr_10': float(np.mean(nme < 0.10))
        }

        if len(nme) > 1 and np.std(nme) > 0:
            low, high = stats.t.interval(
                confidence, len(nme) - 1, loc=np.mean(nme), scale=stats.sem(nme)
            )
            results['nme_ci_low'] = float(low)
            results['nme_ci_high'] = float(high)
        else:
            results['nme_ci_low'] = results['nme_ci_high'] = results['nme_mean']

        return results

    def evaluate_sequence(
        self,
        results: Sequence[FrameResult],
        ground_truth: Sequence[Optional[LandmarkCollection]],
        left_id: str = 'left_eye_outer',
        right_id: str = 'right_eye_outer'
    ) -> Dict[str, float]:
        """
        Landmark accuracy over the frames where both a prediction and
        ground truth exist.

        Args:
            results: Frame results of one session
            ground_truth: Per-frame annotations (None: face not annotated)

        Returns:
            Accuracy metrics plus 'n_evaluated' and 'n_missed' (annotated
            frames without landmarks)
        """
        if len(results) != len(ground_truth):
            raise ValueError("Need one annotation entry per frame result")

        preds: List[np.ndarray] = []
        truths: List[np.ndarray] = []
        iods: List[float] = []
        missed = 0
        for result, truth in zip(results, ground_truth):
            if truth is None:
                continue
            if not result.has_landmarks:
                missed += 1
                continue
            if not result.landmarks.has_same_schema(truth):
                raise ValueError(f"Frame {result.frame_index}: landmark schema mismatch")
            preds.append(result.landmarks.points)
            truths.append(truth.points)
            iods.append(interocular_distance(truth, left_id, right_id))

        metrics: Dict[str, float] = {}
        if preds:
            metrics = self.evaluate_landmark_accuracy(
                np.stack(preds), np.stack(truths), np.array(iods)
            )
        metrics['n_evaluated'] = len(preds)
        metrics['n_missed'] = missed
        return metrics
