#!/usr/bin/env python3
"""
Configuration Management CLI Tool
Provides command-line interface for inspecting, validating and templating configurations
"""

import argparse
import json
import yaml
import sys
from dataclasses import asdict
from typing import Dict, Any, List, Optional

from .config import ConfigManager


class ConfigCLI:
    """Command-line interface for configuration management"""

    def __init__(self, config_dir: str = "config"):
        self.config_manager = ConfigManager(config_dir)

    def validate_config(self, environment: str = None) -> bool:
        """Validate configuration for specified environment"""
        try:
            config = self.config_manager.load_config(environment)
            config.to_aggregation_config()
            print(f"✅ Configuration for '{config.environment}' is valid")
            return True
        except Exception as e:
            print(f"❌ Configuration validation failed: {e}")
            return False

    def show_config(self, environment: str = None, format_type: str = "yaml"):
        """Display current configuration"""
        try:
            config_dict = asdict(self.config_manager.load_config(environment))

            if format_type.lower() == "json":
                print(json.dumps(config_dict, indent=2, default=str))
            else:
                print(yaml.dump(config_dict, default_flow_style=False))

        except Exception as e:
            print(f"❌ Failed to load configuration: {e}")

    def generate_config_template(self, environment: str, output_file: str = None) -> Dict[str, Any]:
        """Generate configuration template for specified environment"""
        production = environment == "production"
        template = {
            "environment": environment,
            "debug": environment == "development",
            "hot_reload": environment == "development",
            "config_version": "1.0.0",
            "network": {
                "host": "0.0.0.0",
                "port": 8000
            },
            "aggregation": {
                "algorithm": "weighted-fedavg",
                "min_submissions": 3 if production else 2,
                "weighting_strategy": "dataset-size",
                "outlier_detection": True,
                "outlier_threshold": 2.5,
                "outlier_method": "leave-one-out"
            },
            "verification": {
                "gateway": "signature",
                "timeout_seconds": 10.0
            },
            "storage": {
                "backend": "file" if production else "memory",
                "directory": "models",
                "max_history": 100,
                "save_retries": 3,
                "retry_backoff_seconds": 0.5,
                "blob_backend": "file" if production else "none",
                "blob_directory": "blobs"
            },
            "monitoring": {
                "enable_metrics": True,
                "log_level": "DEBUG" if environment == "development" else "INFO"
            }
        }

        if output_file:
            with open(output_file, 'w') as f:
                yaml.dump(template, f, default_flow_style=False)
            print(f"✅ Generated configuration template: {output_file}")
        else:
            print(yaml.dump(template, default_flow_style=False))

        return template

    def check_config_drift(self):
        """Check for configuration drift between environments"""
        environments = ["development", "staging", "production"]
        configs = {}

        print("🔍 Checking configuration drift between environments...")
        print()

        for env in environments:
            try:
                configs[env] = asdict(self.config_manager.load_config(env))
            except Exception as e:
                print(f"⚠️  Could not load {env} config: {e}")
                continue

        if len(configs) < 2:
            print("❌ Need at least 2 environment configs to compare")
            return

        base_env = list(configs.keys())[0]
        base_config = configs[base_env]

        for env, config in configs.items():
            if env == base_env:
                continue

            print(f"📋 Comparing {base_env} vs {env}:")
            self._compare_configs(base_config, config, "")
            print()

    def _compare_configs(self, config1: Dict[str, Any], config2: Dict[str, Any], prefix: str):
        """Recursively compare two configuration dictionaries"""
        all_keys = set(config1.keys()) | set(config2.keys())

        for key in sorted(all_keys):
            full_key = f"{prefix}.{key}" if prefix else key

            if key not in config1:
                print(f"  + {full_key}: missing in first config")
            elif key not in config2:
                print(f"  - {full_key}: missing in second config")
            elif isinstance(config1[key], dict) and isinstance(config2[key], dict):
                self._compare_configs(config1[key], config2[key], full_key)
            elif config1[key] != config2[key]:
                print(f"  ≠ {full_key}: {config1[key]} → {config2[key]}")


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(description="Configuration Management CLI")
    parser.add_argument("--config-dir", default="config", help="Directory holding the YAML files")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate configuration")
    validate_parser.add_argument("--env", help="Environment to validate")

    # Show command
    show_parser = subparsers.add_parser("show", help="Show configuration")
    show_parser.add_argument("--env", help="Environment to show")
    show_parser.add_argument("--format", choices=["yaml", "json"], default="yaml")

    # Template command
    template_parser = subparsers.add_parser("template", help="Generate configuration template")
    template_parser.add_argument("environment", help="Environment name")
    template_parser.add_argument("--output", help="Output file path")

    # Drift check command
    subparsers.add_parser("drift", help="Check configuration drift between environments")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    cli = ConfigCLI(args.config_dir)

    try:
        if args.command == "validate":
            success = cli.validate_config(args.env)
            sys.exit(0 if success else 1)
        elif args.command == "show":
            cli.show_config(args.env, args.format)
        elif args.command == "template":
            cli.generate_config_template(args.environment, args.output)
        elif args.command == "drift":
            cli.check_config_drift()
    except KeyboardInterrupt:
        print("\n🛑 Operation cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
