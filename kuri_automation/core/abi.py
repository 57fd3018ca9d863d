"""
Minimal contract ABIs for the calls the automation agent makes.
"""


def _fn(name, inputs=(), outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
        "stateMutability": mutability,
    }


KURI_CORE_ABI = [
    _fn(
        "kuriData",
        outputs=[
            ("creator", "address"),
            ("kuriAmount", "uint64"),
            ("totalParticipantsCount", "uint16"),
            ("totalActiveParticipantsCount", "uint16"),
            ("intervalDuration", "uint24"),
            ("nexRaffleTime", "uint48"),
            ("nextIntervalDepositTime", "uint48"),
            ("launchPeriod", "uint48"),
            ("startTime", "uint48"),
            ("endTime", "uint48"),
            ("intervalType", "uint8"),
            ("state", "uint8"),
        ],
    ),
    _fn("passedIntervalsCounter", outputs=[("numTotalDepositIntervalsPassed", "uint16")]),
    _fn("userIdToAddress", inputs=[("", "uint16")], outputs=[("", "address")]),
    _fn("hasPaid", inputs=[("_user", "address"), ("_intervalIndex", "uint256")], outputs=[("", "bool")]),
    _fn("intervalToWinnerIndex", inputs=[("", "uint16")], outputs=[("", "uint16")]),
    _fn("s_subscriptionId", outputs=[("", "uint256")]),
    _fn("kuriNarukk", outputs=[("_requestId", "uint256")], mutability="nonpayable"),
]

VRF_COORDINATOR_ABI = [
    _fn(
        "getSubscription",
        inputs=[("subId", "uint256")],
        outputs=[
            ("balance", "uint96"),
            ("nativeBalance", "uint96"),
            ("reqCount", "uint64"),
            ("subOwner", "address"),
            ("consumers", "address[]"),
        ],
    ),
]

SUBSCRIPTION_MANAGER_ABI = [
    _fn(
        "topUpSubscription",
        inputs=[("amount", "uint256"), ("subscriptionId", "uint256")],
        mutability="nonpayable",
    ),
]
