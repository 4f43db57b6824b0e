from dataclasses import dataclass


@dataclass(frozen=True)
class LedgerConfig:
    symbol: str = "PT1"
    network_id: str = "progtoken-emulator"
    base_unit: str = "base"
    # Every output must carry at least this much base currency.
    min_output_base: int = 2_000_000
    # fee = min_tx_fee + fee_per_byte * (body bytes + witness_bytes * signers)
    min_tx_fee: int = 155_381
    fee_per_byte: int = 44
    witness_bytes: int = 200
    max_tx_inputs: int = 64
    max_tx_outputs: int = 256
    max_datum_bytes: int = 16_384
    # Depth a builder waits for before reading state it just wrote.
    confirmations: int = 1
    retry_attempts: int = 3
    # Maintenance split of a large base output into fee/collateral outputs.
    fee_output_amount: int = 20_000_000
    fee_output_count: int = 20
    proof_marker_name: str = "PVT"
    freeze_marker_name: str = "FREEZE"
    blacklist_marker_name: str = "BLACKLIST"
    fee_treasury_suffix: str = "-DIFF"
    log_level: str = "INFO"


CONFIG = LedgerConfig()
