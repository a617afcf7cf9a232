"""
GuardianRelay Emergency Contact Escalation Engine
=================================================

Decides who to alert when a user triggers an emergency, how to reach each
of them, and when to widen the circle.  Contacts are ranked by physical
proximity, shared location history and recent activity; the best three
are alerted immediately and up to two more are added in each of up to
three escalation waves, until a contact confirms they are helping.

Every decision is recorded in an append-only, hash-chained audit trail.
Contact stores, location history, emergency lookup and delivery channels
are injected collaborators; in-memory implementations ship with the
package for tests and local runs.
"""

__version__ = "0.1.0"
