"""Session, onboarding and deployment control plane for tunnel-backed forms."""
