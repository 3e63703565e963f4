from .user import TokenData, User, UserCreate
from .challenge import ChallengeCreate, ChallengeResponse, SettlementSummary
from .dispute import DisputeCreate, DisputeResponse
from .evidence import ScorecardEvidence, VerificationEvidence
from .wallet import LedgerResult, WalletResponse
