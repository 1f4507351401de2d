"""
Entry point for the Bot Builder backend.
Wires the panel client, provisioner, poller, deployer, chat client and
account store into the relay server and runs it until interrupted.
"""
import asyncio
import sys
from typing import Optional

import aiohttp

from account_store import AccountStore
from chat_client import ChatClient
from config import validate_config
from deployment import DeploymentService
from file_deployer import FileDeployer
from installation_poller import InstallationPoller
from logger_setup import get_logger, setup_logging
from panel_client import PanelClient
from provisioner import ServerProvisioner
from relay_server import RelayServer

logger = get_logger(__name__)


def build_relay(session: aiohttp.ClientSession, accounts: Optional[AccountStore] = None) -> RelayServer:
    """Assemble every component around one shared HTTP session."""
    panel = PanelClient(session)
    provisioner = ServerProvisioner(panel)
    poller = InstallationPoller(panel)
    deployer = FileDeployer(panel)
    deployments = DeploymentService(provisioner, poller, deployer)
    return RelayServer(
        provisioner=provisioner,
        poller=poller,
        deployer=deployer,
        chat=ChatClient(session),
        accounts=accounts or AccountStore(),
        deployments=deployments,
    )


async def main():
    """Start the relay server and serve until cancelled."""
    setup_logging()
    is_valid, issues = validate_config()
    if not is_valid:
        for issue in issues:
            logger.error(f"Configuration error: {issue}")
        sys.exit(1)

    session = aiohttp.ClientSession()
    relay: Optional[RelayServer] = None
    port = None
    try:
        relay = build_relay(session)
        port = await relay.start()
        logger.info(f"Bot Builder relay ready on port {port}")
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Fatal error while running relay: {str(e)}", exc_info=True)
        raise
    finally:
        if relay:
            try:
                await relay.deployments.shutdown()
            except Exception as e:
                logger.warning(f"Error cancelling deployments: {str(e)}", exc_info=True)
            try:
                await relay.stop()
            except Exception as e:
                logger.warning(f"Error stopping relay server: {str(e)}", exc_info=True)
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing HTTP client: {str(e)}", exc_info=True)
        logger.info(f"Bot Builder shutdown complete. Relay port was: {port}")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot Builder stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
