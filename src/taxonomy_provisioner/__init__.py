"""Taxonomy Provisioner package.

Objective:
    Provision and maintain a business-specific folder/label taxonomy inside a
    user's mailbox:
    - Compile a taxonomy from business-type templates and a team roster.
    - Reconcile it against the mailbox (Gmail labels or Outlook folders),
      creating only what is missing, parent before child.
    - Persist a friendly-key map of remote IDs for downstream automation.
    - Report folder health, drift and classifier coverage.

Key modules:
    - :mod:`src.taxonomy_provisioner.templates` / :mod:`src.taxonomy_provisioner.schema_compiler`:
        Template store and taxonomy compilation.
    - :mod:`src.taxonomy_provisioner.gmail_adapter` / :mod:`src.taxonomy_provisioner.outlook_adapter`:
        Provider adapters over the Gmail REST API and Microsoft Graph.
    - :mod:`src.taxonomy_provisioner.fetcher` / :mod:`src.taxonomy_provisioner.reconciler`:
        Remote state enumeration and reconciliation.
    - :mod:`src.taxonomy_provisioner.errors` / :mod:`src.taxonomy_provisioner.retry`:
        Error classification and per-call retry policy.
    - :mod:`src.taxonomy_provisioner.id_map` / :mod:`src.taxonomy_provisioner.store`:
        Friendly-key map and record persistence.
    - :mod:`src.taxonomy_provisioner.health`:
        Health, drift and coverage validation.
    - :mod:`src.taxonomy_provisioner.provisioner`:
        End-to-end workflow coordination and onboarding triggers.
    - :mod:`src.taxonomy_provisioner.cli` / :mod:`src.taxonomy_provisioner.webapp`:
        User-facing entrypoints.
"""

__version__ = "0.1.0"
