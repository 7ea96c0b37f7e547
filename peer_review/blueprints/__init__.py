"""
Peer Review Integrity & Gating Engine
HTTP blueprints: coi_bp, checklist_bp, cap_bp, health_bp.
"""
