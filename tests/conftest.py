"""Pytest configuration and fixtures for dosscan tests."""

import pytest

import ast_factory as f


def quote_lover_unit(check_success: bool = True):
    """Pays the previous leader with a raw call, then takes over the slot."""
    if check_success:
        pay = [
            f.declare(
                [f.var_decl("sent", "bool"), None],
                f.address_call(f.ident("currentQuoteLover", "address payable"), value=f.ident("balance", "uint256")),
            ),
            f.require(f.ident("sent", "bool")),
        ]
    else:
        pay = [
            f.expr_stmt(
                f.address_call(f.ident("currentQuoteLover", "address payable"), value=f.ident("balance", "uint256"))
            ),
        ]
    return f.source_unit(
        f.contract(
            "QuoteLover",
            f.state_var("currentQuoteLover", "address payable"),
            f.state_var("balance", "uint256"),
            f.function(
                "becomeQuoteLover",
                f.require(f.binary(f.msg_value(), ">", f.ident("balance", "uint256"))),
                *pay,
                f.expr_stmt(f.assign(f.ident("balance", "uint256"), f.msg_value())),
                f.expr_stmt(
                    f.assign(
                        f.ident("currentQuoteLover", "address payable"),
                        f.convert("payable", f.msg_sender()),
                    )
                ),
                visibility="external",
                mutability="payable",
            ),
        ),
        path="QuoteLover.sol",
    )


def king_of_ether_unit():
    """Pays the dethroned king with transfer; the attacker's fallback always fails."""
    king = f.contract(
        "KingOfEther",
        f.state_var("currentKing", "address payable"),
        f.state_var("balance", "uint256"),
        f.function(
            "claimThrone",
            f.require(f.binary(f.msg_value(), ">", f.ident("balance", "uint256"))),
            f.expr_stmt(f.transfer(f.ident("currentKing", "address payable"), f.ident("balance", "uint256"))),
            f.expr_stmt(f.assign(f.ident("balance", "uint256"), f.msg_value())),
            f.expr_stmt(
                f.assign(f.ident("currentKing", "address payable"), f.convert("payable", f.msg_sender()))
            ),
            visibility="external",
            mutability="payable",
        ),
    )
    attack = f.contract(
        "Attack",
        f.function(
            "",
            f.assert_(f.boolean(False)),
            kind="fallback",
            visibility="external",
            mutability="payable",
        ),
    )
    return f.source_unit(king, attack, path="KingOfEther.sol")


def recorder_unit(owner_only_append: bool = False):
    """Anyone (or only the owner) can append; reward() pays every recorder in a loop."""
    record_body = [f.expr_stmt(f.push(f.ident("recorders", "address[] storage ref"), f.msg_sender()))]
    if owner_only_append:
        record_body.insert(0, f.require(f.binary(f.msg_sender(), "==", f.ident("owner", "address"))))
    return f.source_unit(
        f.contract(
            "Recorder",
            f.state_var("owner", "address"),
            f.address_array("recorders"),
            f.function("record", *record_body, visibility="external"),
            f.function(
                "reward",
                f.counting_loop(
                    f.member(f.ident("recorders", "address[] storage ref"), "length", "uint256"),
                    f.expr_stmt(
                        f.transfer(
                            f.convert(
                                "payable",
                                f.index(f.ident("recorders", "address[] storage ref"), f.ident("i", "uint256"), "address"),
                            ),
                            f.number(1, "ether"),
                        )
                    ),
                ),
                visibility="external",
            ),
        ),
        path="Recorder.sol",
    )


@pytest.fixture
def quote_lover_ast():
    """Scenario with a checked raw call that forwards all gas."""
    return quote_lover_unit(check_success=True)


@pytest.fixture
def unchecked_quote_lover_ast():
    """Scenario with an unchecked raw call followed by state writes."""
    return quote_lover_unit(check_success=False)


@pytest.fixture
def king_of_ether_ast():
    """Scenario with a transfer to a recipient that always reverts."""
    return king_of_ether_unit()


@pytest.fixture
def recorder_ast():
    """Scenario with a loop over an array anyone can append to."""
    return recorder_unit(owner_only_append=False)


@pytest.fixture
def owner_recorder_ast():
    """Same loop, but appending is restricted to the owner."""
    return recorder_unit(owner_only_append=True)
