"""Per-item dispatch into ephemeral execution contexts.

One work item gets one context: open it, wait until it is ready, inject the
extraction agent, send the task, await the agent's single reply through the
``CompletionRouter`` and close the context again, whatever happened.
"""
