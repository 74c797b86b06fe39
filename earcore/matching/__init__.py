"""
Matching Module for Ear Biometrics

Scoring of ear embeddings against enrolled identities.

Components:
    - interfaces: Result types and abstract scorers/matchers
    - svm_ova: One-vs-All linear SVM (1:N identification)
    - template_matcher: Per-class cosine templates (1:1 verification)

Usage:
    from earcore.matching import train_svm_ova, build_templates, TemplateMatcher
"""

from earcore.matching.interfaces import (
    MatchResult,
    Ranking,
    EmbeddingScorer,
    EmbeddingMatcher,
    rank_scores,
)

from earcore.matching.svm_ova import (
    SvmHyperParams,
    IncrementalLimits,
    SvmPrediction,
    SVMModel,
    train_binary,
    train_svm_ova,
    warm_start_svm,
    add_class_incremental,
    save_svm,
    load_svm,
)

from earcore.matching.template_matcher import (
    TemplateModel,
    TemplateMatcher,
    build_templates,
    cosine_similarity,
    save_templates,
    load_templates,
)

__all__ = [
    # Interfaces
    "MatchResult",
    "Ranking",
    "EmbeddingScorer",
    "EmbeddingMatcher",
    "rank_scores",
    # One-vs-All SVM
    "SvmHyperParams",
    "IncrementalLimits",
    "SvmPrediction",
    "SVMModel",
    "train_binary",
    "train_svm_ova",
    "warm_start_svm",
    "add_class_incremental",
    "save_svm",
    "load_svm",
    # Templates
    "TemplateModel",
    "TemplateMatcher",
    "build_templates",
    "cosine_similarity",
    "save_templates",
    "load_templates",
]
