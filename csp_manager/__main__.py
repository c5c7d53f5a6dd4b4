"""
CSP Manager CLI
"""
import argparse
import sys

import yaml

from csp_manager.config.loader import get_settings
from csp_manager.config.policy_file import dump_policy, load_policy_file
from csp_manager.models.policy import Policy
from csp_manager.policy.composer import header_values, render_meta_tag, report_to_header
from csp_manager.policy.directives import parse_csp


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        prog="csp_manager",
        description="CSP Manager - Content-Security-Policy composition and delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print the header for a policy file
  python -m csp_manager render policies/checkout.yaml

  # Merge a page policy with the site base policy
  python -m csp_manager render policies/checkout.yaml --merge-from policies/base.yaml

  # Preview every directive, including disabled ones
  python -m csp_manager render policies/checkout.yaml --all --pretty

  # Convert an existing header into a policy file
  python -m csp_manager import "default-src 'self'; img-src *" --title Legacy

  # Run the service
  python -m csp_manager serve --port 8080
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    render_parser = subparsers.add_parser('render', help='Render a policy file as a header')
    render_parser.add_argument('file', help='YAML policy file')
    render_parser.add_argument('--merge-from', help='Policy file whose directives are merged in')
    render_parser.add_argument('--all', action='store_true',
                               help='Include disabled directives')
    render_parser.add_argument('--pretty', action='store_true',
                               help='One directive per line')
    render_parser.add_argument('--nonce', help='Nonce for directives with use_nonce set')
    render_parser.add_argument('--meta', action='store_true',
                               help='Render as a <meta http-equiv> tag')

    import_parser = subparsers.add_parser('import', help='Convert a CSP string into a policy file')
    import_parser.add_argument('csp', help='CSP header value')
    import_parser.add_argument('--title', default='Imported policy', help='Policy title')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP service')
    serve_parser.add_argument('--host', help='Listen address (default: CSP_LISTEN_HOST)')
    serve_parser.add_argument('--port', type=int, help='Listen port (default: CSP_LISTEN_PORT)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == 'render':
            return cmd_render(args)
        elif args.command == 'import':
            return cmd_import(args)
        elif args.command == 'serve':
            return cmd_serve(args)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def cmd_render(args):
    """Execute render command"""
    policy = load_policy_file(args.file)
    merge_from = load_policy_file(args.merge_from) if args.merge_from else None

    values = header_values(
        policy,
        merge_from=merge_from,
        enabled=None if args.all else True,
        pretty=args.pretty,
        nonce=args.nonce,
        include_reporting=not args.meta,
    )
    if values is None:
        print("Policy has no directives; no header would be sent.", file=sys.stderr)
        return 2

    if args.meta:
        print(render_meta_tag(values))
        return 0

    print(f"{values.header}: {values.policy_string}")
    if values.reporting:
        print(f"Report-To: {report_to_header(values.reporting)}")
    return 0


def cmd_import(args):
    """Execute import command"""
    directives = parse_csp(args.csp)
    if not directives:
        print("No directives found.", file=sys.stderr)
        return 1
    policy = Policy(title=args.title, directives=tuple(directives))
    sys.stdout.write(dump_policy(policy))
    return 0


def cmd_serve(args):
    """Execute serve command"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "csp_manager.main:app",
        host=args.host or settings.listen_host,
        port=args.port or settings.listen_port,
        log_config=None,
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
