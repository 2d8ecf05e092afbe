"""Run the gitops-loop command line tool."""

from gitops_loop.tool.gitops_loop import main

main()
