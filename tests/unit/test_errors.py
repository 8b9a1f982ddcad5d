import requests

from KaleRig.errors import (
    ContractError,
    ContractRejection,
    LedgerError,
    TransportError,
    decode_contract_error,
    describe_error,
    wrap_ledger_error,
)


def test_decode_contract_error_from_simulation_text():
    text = "HostError: Error(Contract, #8)\nEvent log (newest first): ..."
    assert decode_contract_error(text) is ContractError.HarvestNotReady


def test_decode_unknown_or_missing_code():
    assert decode_contract_error("Error(Contract, #99)") is None
    assert decode_contract_error("timeout") is None


def test_wrap_maps_contract_errors_to_rejection():
    err = wrap_ledger_error(RuntimeError("failed: Error(Contract, #4)"))
    assert isinstance(err, ContractRejection)
    assert err.kind is ContractError.AlreadyHasPail
    assert err.code == 4
    assert str(err) == "AlreadyHasPail"


def test_wrap_maps_network_errors_to_transport():
    assert isinstance(wrap_ledger_error(requests.ConnectionError("refused")), TransportError)
    assert isinstance(wrap_ledger_error(TimeoutError("slow")), TransportError)


def test_wrap_keeps_ledger_errors_and_falls_back_to_base():
    original = TransportError("down")
    assert wrap_ledger_error(original) is original
    err = wrap_ledger_error(ValueError("odd"))
    assert type(err) is LedgerError


def test_describe_error_prefers_contract_name():
    assert describe_error(ContractRejection(ContractError.FarmIsPaused)) == "FarmIsPaused"
    assert describe_error(LedgerError("Error(Contract, #10)")) == "PailNotFound"
    assert describe_error(LedgerError("boom")) == "boom"
