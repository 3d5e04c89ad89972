"""
Analytics Insight Engine

Derives prioritized, expiring insights from behavior patterns,
department health and intervention history:
- Trend prediction (least-squares over weekly severity)
- Anomaly detection (z-score)
- Organizational risk scoring
- Intervention recommendations

All models are rule- or statistics-based and deterministic given `now`.
"""
