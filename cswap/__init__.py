"""Confidential swap client package."""

from .allowance import allowance_account_metas, derive_allowance_pda
from .assembler import ConfirmationTimeout, OnChainExecutionError, TransactionAssembler
from .config import ConfigurationError, ProtocolVersion, SwapConfig, load_swap_config
from .decrypt import DECRYPT_FAILED, BackoffPolicy, BalanceDecryptor
from .flow import FlowStage, SwapFlow, SwapFlowError, SwapRequest
from .handles import HandleResolutionError, HandleResolver, extract_handle, extract_handle_from_raw
from .lookup_table import LookupTableManager, LookupTableSyncFailure
from .packing import AccountOrderingDefect, PackedAccounts, SwapTreeAccounts
from .proofs import ProofResolver, ProofUnavailable, ValidityProof
from .quote import SwapQuote, quote_exact_in

__all__ = [
    "AccountOrderingDefect",
    "BackoffPolicy",
    "BalanceDecryptor",
    "ConfigurationError",
    "ConfirmationTimeout",
    "DECRYPT_FAILED",
    "FlowStage",
    "HandleResolutionError",
    "HandleResolver",
    "LookupTableManager",
    "LookupTableSyncFailure",
    "OnChainExecutionError",
    "PackedAccounts",
    "ProofResolver",
    "ProofUnavailable",
    "ProtocolVersion",
    "SwapConfig",
    "SwapFlow",
    "SwapFlowError",
    "SwapQuote",
    "SwapRequest",
    "SwapTreeAccounts",
    "TransactionAssembler",
    "ValidityProof",
    "allowance_account_metas",
    "derive_allowance_pda",
    "extract_handle",
    "extract_handle_from_raw",
    "load_swap_config",
    "quote_exact_in",
]
