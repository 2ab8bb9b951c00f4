"""
Comprehensive test suite for the Advanced Federated Pipeline system.

This test suite provides:
- Unit tests for all core components with >90% coverage
- Integration tests for federated learning workflows
- Mock SDR hardware for development testing
- Automated privacy and security validation tests
- Performance and stress testing capabilities
"""