# VeriCallRegistry ABI, the subset this service calls.

REGISTRY_ABI = [
    {
        "type": "function",
        "name": "registerCallDecision",
        "inputs": [
            {"name": "callId", "type": "bytes32"},
            {"name": "callerHash", "type": "bytes32"},
            {"name": "decision", "type": "uint8"},
            {"name": "reason", "type": "string"},
            {"name": "zkProofSeal", "type": "bytes"},
            {"name": "journalDataAbi", "type": "bytes"},
            {"name": "sourceUrl", "type": "string"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "getStats",
        "inputs": [],
        "outputs": [
            {"name": "total", "type": "uint256"},
            {"name": "accepted", "type": "uint256"},
            {"name": "blocked", "type": "uint256"},
            {"name": "recorded", "type": "uint256"},
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getRecord",
        "inputs": [{"name": "callId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "callerHash", "type": "bytes32"},
                    {"name": "decision", "type": "uint8"},
                    {"name": "reason", "type": "string"},
                    {"name": "journalHash", "type": "bytes32"},
                    {"name": "zkProofSeal", "type": "bytes"},
                    {"name": "journalDataAbi", "type": "bytes"},
                    {"name": "sourceUrl", "type": "string"},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "submitter", "type": "address"},
                ],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "verifyJournal",
        "inputs": [
            {"name": "callId", "type": "bytes32"},
            {"name": "journalData", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
    },
]
