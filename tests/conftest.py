"""
Shared test fixtures for the scan engine test suite.

Provides sample Solidity contracts, a fresh pattern database, engines with
isolated caches and configuration helpers.
"""

import io
import tempfile
from pathlib import Path

import pytest
from rich.console import Console

from core.analysis_cache import ResultCache
from core.config_manager import ScanConfig
from core.static_analysis_engine import StaticAnalysisEngine
from core.vulnerability_patterns import VulnerabilityDatabase


# ── Sample Solidity contract source ─────────────────────────────

REENTRANCY_SOLIDITY = """\
// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract EtherBank {
    mapping(address => uint256) public balances;

    function deposit() external payable {
        balances[msg.sender] += msg.value;
    }

    function withdraw(uint256 amount) external {
        require(balances[msg.sender] >= amount, "insufficient balance");
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok, "transfer failed");
        balances[msg.sender] -= amount;
    }
}
"""

# Line of the external call and of the balance update above
REENTRANCY_CALL_LINE = 13
REENTRANCY_WRITE_LINE = 15

SELFDESTRUCT_SOLIDITY = """\
pragma solidity ^0.8.20;

contract Killable {
    address payable public owner;

    constructor() {
        owner = payable(msg.sender);
    }

    function kill() external {
        selfdestruct(owner);
    }
}
"""

SELFDESTRUCT_LINE = 11

SKELETON_SOLIDITY = """\
// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract Empty {
}
"""

LEGACY_ARITHMETIC_SOLIDITY = """\
pragma solidity ^0.6.12;

contract LegacyToken {
    mapping(address => uint256) public balances;

    function transfer(address to, uint256 amount) public {
        balances[msg.sender] -= amount;
        balances[to] += amount;
    }
}
"""

PROXY_SOLIDITY = """\
pragma solidity ^0.8.20;

contract Proxy {
    address public implementation;
    address public immutable trustedLib;

    constructor(address lib) {
        trustedLib = lib;
    }

    function forward(bytes calldata data) external {
        (bool ok, ) = implementation.delegatecall(data);
        require(ok);
    }

    function forwardFixed(bytes calldata data) external {
        (bool ok, ) = trustedLib.delegatecall(data);
        require(ok);
    }
}
"""

SAFE_TOKEN_SOLIDITY = """\
// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract SimpleToken {
    mapping(address => uint256) public balances;

    event Transfer(address indexed from, address indexed to, uint256 amount);

    function transfer(address to, uint256 amount) external {
        require(balances[msg.sender] >= amount, "insufficient balance");
        balances[msg.sender] -= amount;
        balances[to] += amount;
        emit Transfer(msg.sender, to, amount);
    }
}
"""


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def pattern_db():
    """Fresh pattern database; the shared instance is reset afterwards."""
    VulnerabilityDatabase.reset()
    yield VulnerabilityDatabase.get_instance()
    VulnerabilityDatabase.reset()


@pytest.fixture
def result_cache():
    return ResultCache(ttl_seconds=3600)


@pytest.fixture
def engine(result_cache):
    """Engine with default analyzers and its own in-memory cache."""
    return StaticAnalysisEngine(ScanConfig(), cache=result_cache)


@pytest.fixture
def uncached_engine():
    return StaticAnalysisEngine(ScanConfig(cache_enabled=False))


@pytest.fixture
def quiet_console():
    """rich Console writing into a buffer instead of the terminal."""
    return Console(file=io.StringIO(), force_terminal=False, width=120)


@pytest.fixture
def tmp_config_file():
    with tempfile.TemporaryDirectory(prefix="scancore_test_") as tmpdir:
        yield Path(tmpdir) / "config.yaml"
