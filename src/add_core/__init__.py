"""ADD core - realm policy engine for the Assess / Decide / Do workflow.

Modules:
- realms: realm enumeration and capability table
- schemas: typed records (Task, Project, Idea, Context, Collection)
- state_machine: realm transition validation
- guard: realm-gated mutations
- queries: derived classifications (stalled, undecided, ready, due ...)
- repository: data store facade and in-memory implementation
- cloudkit: CloudKit Web Services implementation of the facade
- sessions: authentication sessions and audit trail
- config: environment configuration
"""

__version__ = "1.1.0"
