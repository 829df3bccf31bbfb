"""Assignment engines — state machine, fees, escrow, bidding and wallets."""

from assignhub.engine.bidding import BiddingEngine, ProposalSections
from assignhub.engine.escrow import EscrowEngine
from assignhub.engine.fees import FeeNegotiationEngine
from assignhub.engine.lifecycle import AssignmentLifecycle
from assignhub.engine.referral import ReferralOutcome, ReferralProgram
from assignhub.engine.state_machine import AssignmentEvent, AssignmentStateMachine
from assignhub.engine.wallet import WalletDesk

__all__ = [
    "AssignmentEvent",
    "AssignmentLifecycle",
    "AssignmentStateMachine",
    "BiddingEngine",
    "EscrowEngine",
    "FeeNegotiationEngine",
    "ProposalSections",
    "ReferralOutcome",
    "ReferralProgram",
    "WalletDesk",
]
