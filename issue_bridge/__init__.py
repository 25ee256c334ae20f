__red_end_user_data_statement__ = (
    "This cog stores the id of each forum thread it mirrors to GitHub. "
    "Messages posted in those threads are copied to GitHub under the author's Discord name."
)


async def setup(bot) -> None:
    from .issue_bridge import IssueBridge

    await bot.add_cog(IssueBridge(bot))
