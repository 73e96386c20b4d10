"""Agent internals -- the pieces AIAgent in run_agent.py is built from.

Module Overview
---------------
**history.py**
    Ordered conversation turns with tool-call/tool-result linkage checks.

**llm_client.py**
    Model backend clients (Anthropic-style messages API over httpx,
    OpenAI-compatible chat completions over the openai SDK).

**retry.py**
    Exponential backoff for transient backend failures.

**context_compressor.py**
    Token budget governor. Replaces the execution between user turns with
    a model-written summary when the history outgrows its budget.

**model_metadata.py**
    Rough token estimation.

**prompt_assembler.py**
    System prompt assembly -- identity, tool guidance, skills index,
    workspace section.

**tool_executor.py**
    Runs the tool calls of one assistant turn and records their results.

Architecture
------------
Modules only depend on external packages, tendril_constants and each
other's data types, never on run_agent.py. AIAgent coordinates them.
"""
