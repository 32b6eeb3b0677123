#!/usr/bin/env python3
"""
attestlog In-Memory Example

Builds a short hash chain for one agent, reads it back and verifies it.
Then rewrites one stored link to show how tampering is reported.
"""

import secrets

from attestlog import AttestationLog, MemoryLogService
from attestlog.crypto import canonical_bytes, hash_payload


def main():
    service = MemoryLogService()
    log = AttestationLog(service)
    handle = log.create_log(memo="agent audit trail")

    # Payloads carry hashes and references, never raw content
    chain = log.chain(handle, "agent-1")
    chain.append("DECISION", {"action": "login"})
    chain.append("DECISION", {"action": "transfer", "amount": 10})
    last = chain.append("OUTPUT", {"outputHash": hash_payload("Transfer complete.")})

    print("Chain written!")
    print(f"  Log: {handle.log_id}")
    print(f"  Records: {last.sequence_number}")
    print(f"  Head hash: {chain.head_hash}")
    print()

    result = log.verify(handle, "agent-1")
    print(result.summary())
    print()

    # Rewrite the second record's link inside the log
    second = list(log.fetch(handle, "agent-1"))[1]
    wire = second.wire_dict()
    wire["previousRecordHash"] = secrets.token_hex(32)
    service.tamper(handle.log_id, second.sequence_number, canonical_bytes(wire))

    result = log.verify(handle, "agent-1")
    print(result.summary())


if __name__ == "__main__":
    main()
