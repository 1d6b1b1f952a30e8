"""
K-Means Clustering Module
=========================

Seeded Lloyd's k-means over standardized customer features with
deterministic tie-breaking and empty-cluster reseeding, so that the same
data, k and seed always produce the same segments.

Usage:
    from rfm_segments.customer_segmentation import KMeansSegmenter

    segmenter = KMeansSegmenter(n_clusters=4, random_state=1)
    segmenter.fit(features, ['recency', 'frequency', 'monetary_value'])
    assignments = segmenter.get_assignments()
"""

import warnings
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple

import numpy as np
import pandas as pd
from sklearn.cluster import kmeans_plusplus
from sklearn.preprocessing import StandardScaler
from sklearn.metrics import silhouette_score, calinski_harabasz_score, davies_bouldin_score
from loguru import logger

from ..common.errors import ConfigurationError, ConvergenceWarning
from ..common.records import SegmentAssignment


@dataclass(frozen=True)
class ScalingParameter:
    mean: float
    std: float
    degenerate: bool = False


@dataclass
class ClusterModel:
    """
    Fitted clustering state for a single run.

    Centroids live in standardized feature space; use the scaling
    parameters to map them back to raw units.
    """

    k: int
    centroids: np.ndarray
    feature_names: List[str]
    scaling: Dict[str, ScalingParameter]
    converged: bool
    n_iter: int
    inertia: float
    random_seed: int

    @property
    def feature_scaling_parameters(self) -> Dict[str, Tuple[float, float]]:
        return {name: (p.mean, p.std) for name, p in self.scaling.items()}

    @property
    def degenerate_features(self) -> List[str]:
        return [name for name, p in self.scaling.items() if p.degenerate]


@dataclass
class _LloydResult:
    labels: np.ndarray
    centroids: np.ndarray
    distances: np.ndarray
    inertia: float
    n_iter: int
    converged: bool


class KMeansSegmenter:
    """
    K-Means clustering for customer segmentation.

    Features:
    - Standardization with zero-variance dimensions pinned to 0
    - Seeded k-means++ or random initialization with restarts
    - Lloyd refinement, ties broken by lowest cluster index
    - Empty clusters reseeded from the farthest customer

    Example:
        >>> segmenter = KMeansSegmenter(n_clusters=2, random_state=1)
        >>> segmenter.fit(df, ['recency', 'frequency', 'monetary_value'])
        >>> segmenter.get_cluster_sizes()
        [2, 1]
    """

    def __init__(
        self,
        n_clusters: int = 4,
        init: str = 'k-means++',
        n_init: int = 10,
        max_iter: int = 300,
        random_state: int = 42
    ):
        """
        Initialize K-Means Segmenter.

        Args:
            n_clusters: Number of clusters k
            init: Initialization method ('k-means++' or 'random')
            n_init: Number of seeded initializations; lowest inertia wins
            max_iter: Maximum Lloyd iterations per initialization
            random_state: Random seed for reproducibility
        """
        if init not in ('k-means++', 'random'):
            raise ConfigurationError('INVALID_SETTINGS', f"Unknown init method: {init}")
        if n_init < 1:
            raise ConfigurationError('INVALID_SETTINGS', f"n_init must be >= 1, got {n_init}")
        if max_iter < 1:
            raise ConfigurationError(
                'INVALID_MAX_ITERATIONS', f"max_iter must be >= 1, got {max_iter}"
            )

        self.n_clusters = n_clusters
        self.init = init
        self.n_init = n_init
        self.max_iter = max_iter
        self.random_state = random_state

        self.model: Optional[ClusterModel] = None
        self.feature_columns: Optional[List[str]] = None
        self.customer_ids_: Optional[np.ndarray] = None
        self.X_scaled_: Optional[np.ndarray] = None
        self.labels_: Optional[np.ndarray] = None
        self.distances_: Optional[np.ndarray] = None
        self.cluster_centers_: Optional[np.ndarray] = None
        self.inertia_: Optional[float] = None

        logger.info("KMeansSegmenter initialized")

    def fit(
        self,
        df: pd.DataFrame,
        feature_columns: List[str],
        id_column: str = 'customer_id'
    ) -> 'KMeansSegmenter':
        """
        Fit K-Means model to a feature table.

        Args:
            df: DataFrame with one row per customer
            feature_columns: List of feature column names
            id_column: Customer identifier column

        Returns:
            Self for method chaining

        Raises:
            ConfigurationError: INVALID_K if k < 1 or k exceeds the number of rows
        """
        self._check_k(len(df))

        missing = [c for c in feature_columns if c not in df.columns]
        if missing:
            raise ConfigurationError('INVALID_SETTINGS', f"Unknown feature columns: {missing}")

        self.feature_columns = list(feature_columns)
        X = df[self.feature_columns].to_numpy(dtype='float64')
        if not np.isfinite(X).all():
            raise ValueError("Feature table contains missing or non-finite values")

        self.customer_ids_ = (
            df[id_column].to_numpy() if id_column in df.columns else df.index.to_numpy()
        )

        X_scaled, scaling = self._standardize(X)
        self.X_scaled_ = X_scaled

        best = None
        for seed in self._init_seeds():
            centroids = self._init_centroids(X_scaled, seed)
            result = self._lloyd(X_scaled, centroids)
            if best is None or result.inertia < best.inertia:
                best = result

        self.labels_ = best.labels
        self.distances_ = best.distances
        self.cluster_centers_ = best.centroids
        self.inertia_ = best.inertia
        self.model = ClusterModel(
            k=self.n_clusters,
            centroids=best.centroids,
            feature_names=list(self.feature_columns),
            scaling=scaling,
            converged=best.converged,
            n_iter=best.n_iter,
            inertia=best.inertia,
            random_seed=self.random_state
        )

        logger.info(f"Fitted K-Means with {self.n_clusters} clusters in {best.n_iter} iterations")
        logger.info(f"Inertia: {self.inertia_:.2f}")

        if not best.converged:
            message = (
                f"K-Means did not converge within {self.max_iter} iterations; "
                f"keeping last assignment"
            )
            logger.warning(message)
            warnings.warn(message, ConvergenceWarning, stacklevel=2)

        return self

    def fit_predict(
        self,
        df: pd.DataFrame,
        feature_columns: List[str]
    ) -> np.ndarray:
        """Fit model and return cluster labels."""
        self.fit(df, feature_columns)
        return self.labels_

    def predict(self, df: pd.DataFrame) -> np.ndarray:
        """
        Assign new feature rows to the nearest fitted centroid.

        Args:
            df: DataFrame with the fitted feature columns

        Returns:
            Array of cluster labels
        """
        if self.model is None:
            raise ValueError("Model not fitted. Call fit() first.")

        X = df[self.feature_columns].to_numpy(dtype='float64')
        X_scaled = self._apply_scaling(X)
        distances = self._pairwise_distances(X_scaled, self.cluster_centers_)
        return np.argmin(distances, axis=1)

    def _check_k(self, n_customers: int):
        k = self.n_clusters
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
            raise ConfigurationError('INVALID_K', f"k must be an integer, got {k!r}")
        if k < 1:
            raise ConfigurationError('INVALID_K', f"k must be >= 1, got {k}")
        if k > n_customers:
            raise ConfigurationError(
                'INVALID_K', f"k={k} exceeds the number of customers ({n_customers})"
            )

    def _standardize(self, X: np.ndarray) -> Tuple[np.ndarray, Dict[str, ScalingParameter]]:
        """Z-score each column; constant columns become 0 and are flagged degenerate."""
        scaler = StandardScaler()
        X_scaled = scaler.fit_transform(X)

        degenerate = np.ptp(X, axis=0) == 0
        X_scaled[:, degenerate] = 0.0
        stds = np.sqrt(scaler.var_)
        stds[degenerate] = 0.0

        scaling = {
            name: ScalingParameter(
                mean=float(scaler.mean_[i]),
                std=float(stds[i]),
                degenerate=bool(degenerate[i])
            )
            for i, name in enumerate(self.feature_columns)
        }

        if degenerate.any():
            names = [n for n, p in scaling.items() if p.degenerate]
            logger.warning(f"Zero-variance features standardized to 0: {names}")

        return X_scaled, scaling

    def _apply_scaling(self, X: np.ndarray) -> np.ndarray:
        X_scaled = np.zeros_like(X, dtype='float64')
        for i, name in enumerate(self.feature_columns):
            param = self.model.scaling[name]
            if not param.degenerate:
                X_scaled[:, i] = (X[:, i] - param.mean) / param.std
        return X_scaled

    def _init_seeds(self) -> np.ndarray:
        rng = np.random.RandomState(self.random_state)
        return rng.randint(np.iinfo(np.int32).max, size=self.n_init)

    def _init_centroids(self, X: np.ndarray, seed: int) -> np.ndarray:
        """Choose k starting centroids reproducibly from the seed."""
        if self.init == 'k-means++':
            centers, _ = kmeans_plusplus(X, n_clusters=self.n_clusters, random_state=seed)
            return centers

        rng = np.random.RandomState(seed)
        indices = rng.choice(len(X), size=self.n_clusters, replace=False)
        return X[np.sort(indices)].copy()

    @staticmethod
    def _pairwise_distances(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        return np.sqrt(((X[:, np.newaxis, :] - centroids[np.newaxis, :, :]) ** 2).sum(axis=2))

    def _lloyd(self, X: np.ndarray, centroids: np.ndarray) -> _LloydResult:
        """
        Lloyd's algorithm.

        Each iteration assigns every customer to its nearest centroid
        (np.argmin keeps the lowest index on exact ties), reseeds empty
        clusters, then recomputes centroids from the full assignment.
        Stops when no label changes or after max_iter iterations.
        """
        labels = None
        converged = False
        n_iter = 0

        for n_iter in range(1, self.max_iter + 1):
            distances = self._pairwise_distances(X, centroids)
            new_labels = self._reseed_empty_clusters(
                distances, np.argmin(distances, axis=1)
            )

            changed = labels is None or bool(np.any(new_labels != labels))
            labels = new_labels
            centroids = self._recompute_centroids(X, labels)

            if not changed:
                converged = True
                break

        own_distances = self._pairwise_distances(X, centroids)[np.arange(len(X)), labels]
        return _LloydResult(
            labels=labels,
            centroids=centroids,
            distances=own_distances,
            inertia=float(np.sum(own_distances ** 2)),
            n_iter=n_iter,
            converged=converged
        )

    def _reseed_empty_clusters(self, distances: np.ndarray, labels: np.ndarray) -> np.ndarray:
        """
        Give every empty cluster the customer farthest from its own centroid.

        Donors are only taken from clusters with more than one member, so
        moving a customer never empties another cluster. Since k <= n this
        always succeeds.
        """
        counts = np.bincount(labels, minlength=self.n_clusters)
        empty = np.flatnonzero(counts == 0)
        if empty.size == 0:
            return labels

        labels = labels.copy()
        own = distances[np.arange(len(labels)), labels].copy()

        for cluster in empty:
            candidates = np.flatnonzero(counts[labels] > 1)
            farthest = candidates[np.argmax(own[candidates])]

            counts[labels[farthest]] -= 1
            labels[farthest] = cluster
            counts[cluster] = 1
            own[farthest] = 0.0

            logger.debug(f"Reseeded empty cluster {cluster} with row {farthest}")

        return labels

    def _recompute_centroids(self, X: np.ndarray, labels: np.ndarray) -> np.ndarray:
        centroids = np.empty((self.n_clusters, X.shape[1]), dtype='float64')
        for cluster in range(self.n_clusters):
            centroids[cluster] = X[labels == cluster].mean(axis=0)
        return centroids

    def get_assignments(self) -> List[SegmentAssignment]:
        """
        One SegmentAssignment per fitted customer.

        Returns:
            List of assignments in feature-table order
        """
        if self.labels_ is None:
            raise ValueError("No labels available. Call fit() first.")

        return [
            SegmentAssignment(
                customer_id=str(customer_id),
                segment_label=int(label),
                distance_to_centroid=float(distance)
            )
            for customer_id, label, distance in zip(
                self.customer_ids_, self.labels_, self.distances_
            )
        ]

    def get_cluster_sizes(self) -> List[int]:
        """Customer counts per segment label, ordered 0..k-1."""
        if self.labels_ is None:
            raise ValueError("No labels available. Call fit() first.")
        return np.bincount(self.labels_, minlength=self.n_clusters).astype(int).tolist()

    def get_cluster_metrics(self) -> Dict[str, Any]:
        """
        Calculate clustering quality metrics on the standardized data.

        Silhouette, Calinski-Harabasz and Davies-Bouldin are only defined
        for 2 <= k < n and are None otherwise.

        Returns:
            Dictionary of clustering metrics

        Example:
            >>> metrics = segmenter.get_cluster_metrics()
            >>> print(f"Inertia: {metrics['inertia']:.3f}")
        """
        if self.model is None:
            raise ValueError("Model not fitted. Call fit() first.")

        metrics = {
            'n_clusters': self.n_clusters,
            'inertia': self.inertia_,
            'n_iter': self.model.n_iter,
            'converged': self.model.converged,
            'silhouette_score': None,
            'calinski_harabasz': None,
            'davies_bouldin': None
        }

        n_labels = len(np.unique(self.labels_))
        if 2 <= n_labels < len(self.labels_):
            metrics['silhouette_score'] = float(silhouette_score(self.X_scaled_, self.labels_))
            metrics['calinski_harabasz'] = float(
                calinski_harabasz_score(self.X_scaled_, self.labels_)
            )
            metrics['davies_bouldin'] = float(davies_bouldin_score(self.X_scaled_, self.labels_))

        return metrics

    def get_cluster_centers_original(self) -> pd.DataFrame:
        """
        Get cluster centers in original (unscaled) feature space.

        Returns:
            DataFrame with cluster centers
        """
        if self.model is None:
            raise ValueError("Model not fitted. Call fit() first.")

        centers = np.empty_like(self.cluster_centers_)
        for i, name in enumerate(self.feature_columns):
            param = self.model.scaling[name]
            centers[:, i] = self.cluster_centers_[:, i] * param.std + param.mean

        return pd.DataFrame(
            centers,
            columns=self.feature_columns,
            index=[f'Cluster_{i}' for i in range(self.n_clusters)]
        )
