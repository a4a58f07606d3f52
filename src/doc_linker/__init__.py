from .config_loader import load_linking_config
from .errors import (
    ConfigError,
    DocumentAlreadyClaimedError,
    DuplicatePairError,
    LinkerError,
    NotFoundError,
    ValidationError,
)
from .features import extract_features
from .linker import AssignmentEngine
from .matcher import rank_candidates
from .models import (
    AssignmentResult,
    Attachment,
    AttachmentSummary,
    CandidateMatch,
    Document,
    FeatureVector,
    PatternRule,
    Period,
    Transaction,
    TransactionOutcome,
)
from .pattern_rules import PatternRuleIndex
from .records import RecordStore, load_records
from .scorer import Scorer, WeightedScorer
from .state_store import AttachmentLedger

__version__ = "0.1.0"
