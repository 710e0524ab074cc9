# app/core/dispatch/__init__.py
"""
Dispatch engine core. Imports nothing from ``app.transport`` and no database driver.

This package matches appraisal jobs to field appraisers and enforces SLAs:
- ``domain``: records, typed schedule, status-history events
- ``geofencing``: distance, service area, travel time, gazetteer lookups
- ``availability``: schedule windows and the availability sub-score
- ``matcher``: candidate gates and weighted scoring
- ``sla_monitor``: breach detection and tiered escalation
- ``notifications``: notification builders and fire-and-forget delivery
- ``engine``: dispatch / auto-assign / reassign orchestration

Storage and delivery are reached only through the protocols in ``ports``.
From ``app.infra`` it uses only the logging, metrics and audit-log helpers;
``build_dispatch_engine`` reads ``app.config.settings`` when wiring.
"""
