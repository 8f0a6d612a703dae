"""
Personalized Feed Ranking.

Provides:
- FeedPipeline: cache-first orchestrator (candidates -> features -> Tier-1
  -> LLM rerank -> diversity -> cache)
- FeedCache / RealtimeInjector: cursor-paginated cached rankings with
  injection of newly created posts
- ExperimentAssignor / ExperimentService / ExperimentAnalyzer: A/B variants
  and their results
- FeedEventTracker / EventIngestor: telemetry client buffer and server ingest
- TopicExtractor: topics/keywords for content_embeddings
"""

from feed.candidate_generator import CandidateGenerator
from feed.chronological import ChronologicalFeed, PostHydrator
from feed.diversity import DiversityConfig, DiversityReranker
from feed.event_ingest import EventIngestor
from feed.event_tracker import FeedEventTracker
from feed.experiment_analysis import ExperimentAnalyzer
from feed.experiments import ExperimentAssignor, ExperimentService
from feed.feature_extractor import FeatureExtractor
from feed.feed_cache import FeedCache
from feed.interest_profile import InterestProfileProvider, ProfileCache
from feed.llm_reranker import LLMReranker, get_llm_reranker
from feed.outcomes import StageOutcome
from feed.pipeline import FeedPipeline, get_feed_pipeline
from feed.realtime_injector import RealtimeInjector
from feed.topic_extractor import TopicExtractor

__all__ = [
    "CandidateGenerator",
    "ChronologicalFeed",
    "PostHydrator",
    "DiversityConfig",
    "DiversityReranker",
    "EventIngestor",
    "FeedEventTracker",
    "ExperimentAnalyzer",
    "ExperimentAssignor",
    "ExperimentService",
    "FeatureExtractor",
    "FeedCache",
    "InterestProfileProvider",
    "ProfileCache",
    "LLMReranker",
    "get_llm_reranker",
    "StageOutcome",
    "FeedPipeline",
    "get_feed_pipeline",
    "RealtimeInjector",
    "TopicExtractor",
]
