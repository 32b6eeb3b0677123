#!/usr/bin/env python3
"""
attestlog SQLite Example

Records survive restarts: the second client resumes the subject's chain from
the database and keeps appending to it. Large payloads are split into chunk
groups transparently.
"""

import tempfile
from pathlib import Path

from attestlog import AttestationLog, AttestLogConfig
from attestlog.crypto import hash_payload


def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = AttestLogConfig(
            backend={"type": "sqlite", "path": str(Path(tmpdir) / "audit.db")},
            builder={"sensitive_keys": ["prompt"]},
        )

        with AttestationLog(config=config) as log:
            handle = log.create_log(memo="model lifecycle", submit_key="local-submit-key")
            chain = log.chain(handle, "model-7")
            chain.append(
                "TRAINING_DATA",
                {"datasetHash": hash_payload("dataset v3"), "manifest": ["shard"] * 400},
            )
            chain.append("MODEL_DEPLOYMENT", {"modelVersion": "7.0.1", "environment": "prod"})
            print(f"Wrote 2 records to {handle.log_id}")

        # A new process would reload the handle from its own storage
        with AttestationLog(config=config) as log:
            chain = log.resume(handle, "model-7")
            logged = chain.append("OUTPUT", {"prompt": "raw prompt text", "tokens": 42})
            print(f"Resumed and appended record {logged.sequence_number}")
            print(f"  prompt stored as: {logged.payload['prompt']}")

            for record in log.fetch(handle, "model-7"):
                print(f"  seq {record.sequence_number} {record.kind.value} chunks={record.chunk_count}")

            print(log.verify(handle, "model-7").summary())


if __name__ == "__main__":
    main()
