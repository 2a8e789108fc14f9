import uuid
from vericall.db import engine, Base
from vericall import models  # noqa: F401
from vericall.schemas.decision import DecisionIn, DecisionOutcome
from vericall.services.decisions import DecisionStore
from vericall.services.pipeline import hash_caller

def main():
    Base.metadata.create_all(bind=engine)

    call_id = f"CA{uuid.uuid4().hex[:32]}"
    store = DecisionStore()
    record = store.put(DecisionIn(
        call_id=call_id,
        decision=DecisionOutcome.BLOCK,
        reason="Caller claimed to be from the tax office and asked for gift cards.",
        transcript=(
            "AI: Hello, who is calling and what is this regarding?\n"
            "Caller: This is the tax office, you owe back taxes, pay now with gift cards.\n"
            "AI: I can't help with that. Goodbye."
        ),
        caller_hash_short=hash_caller("+15550100123"),
        conversation_turns=2,
    ))
    # served at /api/witness/decision/<call_id> until it expires
    print(call_id, record.transcript_hash)

if __name__ == "__main__":
    main()
